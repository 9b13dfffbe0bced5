"""Checkout session creation.

Checkout never creates an order. It hands the payment processor everything
the webhook reconciler will need later, in the session metadata, because
the cart may have changed or disappeared by the time payment completes.
"""

import json
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.core.config import Settings, get_settings
from marketplace.core.database import utc_now
from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.core.stripe import PaymentGateway
from marketplace.models.cart import CartItem
from marketplace.models.catalog import Product
from marketplace.models.coupon import Coupon
from marketplace.models.user import User
from marketplace.schemas.checkout import CheckoutSessionResponse
from marketplace.services.cart_service import CartService, to_cents

logger = logging.getLogger(__name__)

PURCHASE_TYPE = "digital_product_purchase"

# Stripe rejects metadata values longer than this
METADATA_VALUE_LIMIT = 500

ORDER_ITEMS_KEY = "orderItems"
ORDER_ITEMS_PARTS_KEY = "orderItemsParts"
# Stripe allows 50 metadata keys; the other session keys use at most six
MAX_ORDER_ITEM_PARTS = 40


def order_items_metadata(item_ids: list[UUID]) -> dict[str, str]:
    """Split the ordered cart item ids into JSON lists that fit the metadata value limit.

    The first list goes under ``orderItems``, later ones under ``orderItems_1``,
    ``orderItems_2`` and so on; ``orderItemsParts`` records how many there are.

    Raises:
        ValidationError: Too many items to describe in one checkout session.
    """
    parts: list[list[str]] = [[]]
    for item_id in item_ids:
        extended = parts[-1] + [str(item_id)]
        if parts[-1] and len(json.dumps(extended)) > METADATA_VALUE_LIMIT:
            parts.append([str(item_id)])
        else:
            parts[-1] = extended
    if len(parts) > MAX_ORDER_ITEM_PARTS:
        raise ValidationError("Your cart has too many items for a single checkout.")

    metadata = {ORDER_ITEMS_PARTS_KEY: str(len(parts))}
    for index, part in enumerate(parts):
        key = ORDER_ITEMS_KEY if index == 0 else f"{ORDER_ITEMS_KEY}_{index}"
        metadata[key] = json.dumps(part)
    return metadata


def read_order_items_metadata(metadata: dict[str, Any]) -> list[UUID] | None:
    """Reassemble the id list written by ``order_items_metadata``; None if missing or unreadable."""
    try:
        part_count = int(metadata.get(ORDER_ITEMS_PARTS_KEY) or 1)
        item_ids: list[UUID] = []
        for index in range(part_count):
            key = ORDER_ITEMS_KEY if index == 0 else f"{ORDER_ITEMS_KEY}_{index}"
            item_ids.extend(UUID(str(value)) for value in json.loads(metadata[key]))
    except (KeyError, TypeError, ValueError):
        return None
    return item_ids


def with_session_placeholder(success_url: str) -> str:
    """Append the processor's session id placeholder to the success URL."""
    separator = "&" if "?" in success_url else "?"
    return f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


class CheckoutService:
    """Service for creating payment-processor checkout sessions from carts."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        cart_service: CartService,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.cart_service = cart_service
        self.settings = settings or get_settings()

    def create_checkout_session(
        self,
        user_id: UUID,
        success_url: str,
        cancel_url: str,
        coupon_code: str | None = None,
        affiliate_ref: str | None = None,
        email: str | None = None,
    ) -> CheckoutSessionResponse:
        """Create a hosted checkout session for the user's active cart.

        Args:
            user_id: Authenticated buyer.
            success_url: Receipt page; the session id placeholder is appended.
            cancel_url: Page to return to when the buyer cancels.
            coupon_code: Optional coupon, validated and recorded in metadata.
            affiliate_ref: Optional affiliate code, recorded in metadata.
            email: Email from the access token, used when the user row is new.

        Returns:
            CheckoutSessionResponse: Session id and redirect URL.

        Raises:
            NotFoundError: Unknown user.
            ValidationError: Empty cart, unusable coupon or too many items.
            ExternalServiceError: Payment processor unreachable. Nothing local was changed.
        """
        user = self._get_or_create_user(user_id, email)

        cart = self.cart_service.find_active(user_id=user_id)
        items = self.cart_service.load_items(cart.id) if cart else []
        if not items:
            raise ValidationError("Your cart is empty. Add items before checking out.")

        if coupon_code:
            self._validate_coupon(coupon_code, items)

        metadata: dict[str, str] = {
            "type": PURCHASE_TYPE,
            "userId": str(user_id),
            "cartId": str(cart.id),
            **order_items_metadata([item.id for item in items]),
        }
        if coupon_code:
            metadata["couponCode"] = coupon_code
        if affiliate_ref:
            metadata["affiliateRef"] = affiliate_ref

        customer_id = self.ensure_customer(user)

        params: dict[str, Any] = {
            "mode": "payment",
            "customer": customer_id,
            "client_reference_id": str(cart.id),
            "line_items": self._build_line_items(items, cart.currency),
            "metadata": metadata,
            "success_url": with_session_placeholder(success_url),
            "cancel_url": cancel_url,
            "payment_intent_data": {
                "metadata": {
                    "type": PURCHASE_TYPE,
                    "userId": str(user_id),
                    "cartId": str(cart.id),
                },
            },
        }

        session = self.gateway.create_checkout_session(params)
        logger.info("Checkout session created: %s for user %s, cart %s", session["id"], user_id, cart.id)
        return CheckoutSessionResponse(session_id=session["id"], url=session["url"])

    def ensure_customer(self, user: User) -> str:
        """Return the user's processor customer id, creating it on first use."""
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer_id = self.gateway.create_customer(
            email=user.email,
            metadata={"userId": str(user.id)},
        )
        # Only the first writer's customer id is kept
        self.db.execute(
            update(User)
            .where(User.id == user.id, User.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)
        logger.info("Stripe customer %s linked to user %s", user.stripe_customer_id, user.id)
        return user.stripe_customer_id

    def _get_or_create_user(self, user_id: UUID, email: str | None) -> User:
        user = self.db.get(User, user_id)
        if user:
            return user
        if not email:
            raise NotFoundError("User not found")
        user = User(id=user_id, email=email)
        self.db.add(user)
        self.db.commit()
        logger.info("Created user record %s for checkout", user_id)
        return user

    def _validate_coupon(self, code: str, items: list[CartItem]) -> Coupon:
        coupon = self.db.scalars(select(Coupon).where(Coupon.code == code.strip())).first()
        if coupon is None or not coupon.is_redeemable(utc_now()):
            raise ValidationError("Invalid or expired coupon code")
        if coupon.product_id and coupon.product_id not in {item.product_id for item in items}:
            raise ValidationError("Coupon does not apply to the items in your cart")
        return coupon

    def _build_line_items(self, items: list[CartItem], cart_currency: str) -> list[dict[str, Any]]:
        """One line per cart item, billed at the price captured when it was added."""
        products = {
            p.id: p
            for p in self.db.scalars(select(Product).where(Product.id.in_({item.product_id for item in items})))
        }
        line_items = []
        for item in items:
            product = products.get(item.product_id)
            product_data: dict[str, Any] = {"name": product.title if product else "Digital Product"}
            if item.variant is not None:
                product_data["description"] = f"Variant: {item.variant.name}"
            line_items.append(
                {
                    "price_data": {
                        "currency": (item.currency or cart_currency).lower(),
                        "product_data": product_data,
                        "unit_amount": to_cents(item.unit_price),
                    },
                    "quantity": item.quantity or 1,
                }
            )
        return line_items
