"""Unit tests for EmailService."""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from marketplace.services.email_service import EmailService

ITEMS = [{"title": "Icon <Pack>", "price": "19.99"}, {"title": "Font Pack", "price": "20.00"}]


@pytest.fixture
def email_settings():
    with patch("marketplace.services.email_service.get_settings") as mock_settings:
        settings = mock_settings.return_value
        settings.resend_api_key = "re_test_key"
        settings.email_from_address = "Marketplace <orders@example.com>"
        settings.frontend_url = "https://shop.example.com"
        settings.download_token_expiry_days = 30
        settings.download_max_downloads = 5
        yield settings


class TestSendOrderConfirmation:
    """Tests for send_order_confirmation."""

    @patch("marketplace.services.email_service.resend.Emails.send")
    def test_sends_receipt(self, mock_send: MagicMock, email_settings) -> None:
        mock_send.return_value = {"id": "email_123"}

        result = EmailService().send_order_confirmation(
            "buyer@example.com", "ORD-20260101-ABC123", ITEMS, Decimal("39.99"), "USD", "Ada"
        )

        assert result == {"success": True, "email_id": "email_123"}
        params = mock_send.call_args.args[0]
        assert params["to"] == ["buyer@example.com"]
        assert params["subject"] == "Your order ORD-20260101-ABC123"
        assert "Icon &lt;Pack&gt;" in params["html"]
        assert "https://shop.example.com/account/downloads" in params["text"]
        assert "up to 5 downloads" in params["text"]

    @patch("marketplace.services.email_service.resend.Emails.send")
    def test_missing_recipient(self, mock_send: MagicMock, email_settings) -> None:
        result = EmailService().send_order_confirmation(None, "ORD-1", ITEMS, Decimal("1"), "USD")

        assert result["success"] is False
        mock_send.assert_not_called()

    @patch("marketplace.services.email_service.resend.Emails.send")
    def test_not_configured(self, mock_send: MagicMock, email_settings) -> None:
        email_settings.resend_api_key = ""

        result = EmailService().send_order_confirmation("a@example.com", "ORD-1", ITEMS, Decimal("1"), "USD")

        assert result == {"success": False, "error": "email not configured"}
        mock_send.assert_not_called()

    @patch("marketplace.services.email_service.resend.Emails.send")
    def test_provider_error_is_returned(self, mock_send: MagicMock, email_settings) -> None:
        """Test that a Resend failure is reported, not raised."""
        mock_send.side_effect = RuntimeError("rate limited")

        result = EmailService().send_order_confirmation("a@example.com", "ORD-1", ITEMS, Decimal("1"), "USD")

        assert result == {"success": False, "error": "rate limited"}
