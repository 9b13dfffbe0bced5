"""Email service using Resend for transactional emails."""

import logging
from decimal import Decimal
from html import escape
from typing import Any

import resend

from marketplace.core.config import get_settings

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending transactional emails via Resend."""

    def __init__(self) -> None:
        """Initialize email service with Resend API key."""
        settings = get_settings()
        resend.api_key = settings.resend_api_key
        self.is_configured = bool(settings.resend_api_key)
        self.from_email = settings.email_from_address
        self.frontend_url = settings.frontend_url
        self.token_expiry_days = settings.download_token_expiry_days
        self.max_downloads = settings.download_max_downloads

    def send_order_confirmation(
        self,
        to_email: str | None,
        order_number: str,
        items: list[dict[str, Any]],
        total: Decimal,
        currency: str,
        customer_name: str | None = None,
    ) -> dict[str, Any]:
        """Send the purchase receipt with download instructions.

        Args:
            to_email: Billing email captured at checkout.
            order_number: Human-readable order number.
            items: Purchased lines, each with ``title`` and ``price``.
            total: Order total.
            currency: ISO currency code.
            customer_name: Optional billing name.

        Returns:
            dict: Resend API response with email ID.
        """
        if not to_email:
            logger.warning("No billing email for order %s, skipping confirmation", order_number)
            return {"success": False, "error": "missing recipient"}
        if not self.is_configured:
            logger.warning("RESEND_API_KEY not configured, skipping confirmation for %s", order_number)
            return {"success": False, "error": "email not configured"}

        name = customer_name or "there"
        downloads_url = f"{self.frontend_url}/account/downloads"
        rows = "".join(
            f'<tr><td style="padding: 8px 0;">{escape(item["title"])}</td>'
            f'<td style="padding: 8px 0; text-align: right;">{item["price"]} {currency}</td></tr>'
            for item in items
        )

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Your order {order_number}</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="color: #111827;">Thanks for your purchase, {escape(name)}!</h1>
    <p>Order <strong>{order_number}</strong> is complete.</p>
    <table style="width: 100%; border-collapse: collapse;">
        {rows}
        <tr><td style="padding: 8px 0; border-top: 1px solid #e5e7eb;"><strong>Total</strong></td>
        <td style="padding: 8px 0; border-top: 1px solid #e5e7eb; text-align: right;"><strong>{total} {currency}</strong></td></tr>
    </table>
    <p style="font-size: 14px; color: #6b7280;">
        Each download link is valid for {self.token_expiry_days} days and up to {self.max_downloads} downloads.
    </p>
    <div style="text-align: center; margin: 30px 0;">
        <a href="{downloads_url}" style="background: #111827; color: white; padding: 12px 28px; text-decoration: none; border-radius: 6px; font-weight: 600;">
            Go to my downloads
        </a>
    </div>
</body>
</html>
"""

        text_lines = "\n".join(f"- {item['title']}: {item['price']} {currency}" for item in items)
        text_content = f"""
Thanks for your purchase, {name}!

Order {order_number} is complete.

{text_lines}
Total: {total} {currency}

Each download link is valid for {self.token_expiry_days} days and up to {self.max_downloads} downloads.
Your downloads: {downloads_url}
"""

        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [to_email],
                "subject": f"Your order {order_number}",
                "html": html_content,
                "text": text_content,
            })

            logger.info("Order confirmation sent to %s for %s, id: %s", to_email, order_number, response.get("id"))
            return {"success": True, "email_id": response.get("id")}

        except Exception as e:
            logger.error("Failed to send order confirmation to %s: %s", to_email, str(e))
            return {"success": False, "error": str(e)}
