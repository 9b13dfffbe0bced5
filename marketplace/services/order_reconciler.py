"""Webhook reconciliation: turns payment events into orders exactly once.

Delivery is at-least-once and unordered, so every path here is idempotent.
The unique index on ``orders.stripe_session_id`` is what guarantees a single
order per checkout session; the lookup before the insert only keeps the
common redelivery case quiet.
"""

import logging
import secrets
import string
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.cache import BestEffortCache
from marketplace.core.database import utc_now
from marketplace.models.cart import Cart, CartItem
from marketplace.models.catalog import Product
from marketplace.models.download_token import DownloadToken
from marketplace.models.order import Order, OrderItem, OrderStatus
from marketplace.models.user import User
from marketplace.services.cart_service import CartService, to_cents
from marketplace.services.checkout_service import PURCHASE_TYPE, read_order_items_metadata
from marketplace.services.email_service import EmailService
from marketplace.services.entitlement_service import EntitlementService
from marketplace.services.side_effects import DomainEvent, EventBus, EventType, PostCommitEffects

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRECOVERABLE = "unrecoverable"
    FAILED = "failed"
    REFUNDED = "refunded"
    NOOP = "noop"


def generate_order_number(now: datetime | None = None) -> str:
    """ORD-YYYYMMDD-XXXXXX with a random uppercase alphanumeric suffix."""
    stamp = (now or utc_now()).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"


def user_orders_tag(user_id: UUID | str) -> str:
    return f"user_orders:{user_id}"


ADMIN_ORDERS_TAG = "admin_orders"


def _object_id(value: Any) -> str | None:
    """Stripe fields like ``payment_intent`` may be an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class OrderReconciler:
    """Exclusive writer of the completed, failed and refunded order transitions."""

    def __init__(
        self,
        db: Session,
        cache: BestEffortCache,
        event_bus: EventBus,
        email_service: EmailService,
        cart_service: CartService,
        entitlements: EntitlementService,
    ) -> None:
        self.db = db
        self.cache = cache
        self.event_bus = event_bus
        self.email_service = email_service
        self.cart_service = cart_service
        self.entitlements = entitlements

    def handle_event(self, event: dict[str, Any]) -> ReconcileOutcome:
        """Dispatch a verified webhook event.

        Returns normally for handled, duplicate, ignored and unrecoverable
        events. Raises only for transient failures the sender should retry.
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type not in (
            "checkout.session.completed",
            "checkout.session.async_payment_failed",
            "checkout.session.expired",
            "charge.refunded",
        ):
            logger.debug("Unhandled webhook event type: %s", event_type)
            return ReconcileOutcome.IGNORED

        if metadata.get("type") != PURCHASE_TYPE:
            logger.debug("Ignoring %s %s: not a digital product purchase", event_type, obj.get("id"))
            return ReconcileOutcome.IGNORED

        if event_type == "checkout.session.completed":
            return self.handle_checkout_completed(obj)
        if event_type == "charge.refunded":
            return self.handle_charge_refunded(obj)
        return self.handle_payment_failed(obj)

    # Completion

    def handle_checkout_completed(self, session: dict[str, Any]) -> ReconcileOutcome:
        """Materialize the order, its items and download tokens in one transaction."""
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        try:
            user_id = UUID(metadata["userId"])
            cart_id = UUID(metadata["cartId"])
        except (KeyError, TypeError, ValueError):
            logger.error("Checkout session %s missing or invalid userId/cartId in metadata", session_id)
            return ReconcileOutcome.UNRECOVERABLE
        if not session_id:
            logger.error("Checkout session event without an id for cart %s", cart_id)
            return ReconcileOutcome.UNRECOVERABLE

        existing = self._find_by_session(session_id)
        if existing:
            logger.info("Order already exists for session %s: %s", session_id, existing.order_number)
            return ReconcileOutcome.DUPLICATE

        cart = self.db.get(Cart, cart_id)
        if cart is None:
            logger.error("Cart %s not found for session %s, order cannot be created", cart_id, session_id)
            return ReconcileOutcome.UNRECOVERABLE
        if cart.user_id != user_id:
            logger.error("Cart %s does not belong to user %s (session %s)", cart_id, user_id, session_id)
            return ReconcileOutcome.UNRECOVERABLE

        item_ids = read_order_items_metadata(metadata)
        if item_ids is None:
            logger.error("Checkout session %s has no readable orderItems metadata for cart %s", session_id, cart_id)
            return ReconcileOutcome.UNRECOVERABLE

        cart_items = self._load_purchased_items(cart_id, item_ids)
        if not cart_items:
            logger.error("No cart items found for cart %s, session %s", cart_id, session_id)
            return ReconcileOutcome.UNRECOVERABLE

        products = {
            p.id: p
            for p in self.db.scalars(select(Product).where(Product.id.in_({i.product_id for i in cart_items})))
        }

        subtotal_cents = sum(to_cents(item.unit_price) * (item.quantity or 1) for item in cart_items)
        discount_cents = 0
        subtotal = Decimal(subtotal_cents) / 100
        total = Decimal(subtotal_cents - discount_cents) / 100
        currency = cart.currency or "USD"

        amount_total = session.get("amount_total")
        if amount_total is not None and amount_total != subtotal_cents - discount_cents:
            logger.warning(
                "Amount mismatch for session %s: processor charged %s, snapshots total %s cents",
                session_id,
                amount_total,
                subtotal_cents - discount_cents,
            )

        customer_details = session.get("customer_details") or {}
        now = utc_now()

        try:
            order = Order(
                user_id=user_id,
                order_number=generate_order_number(now),
                status=OrderStatus.COMPLETED,
                subtotal=subtotal,
                discount_amount=Decimal(discount_cents) / 100,
                total=total,
                currency=currency,
                stripe_session_id=session_id,
                stripe_payment_intent_id=_object_id(session.get("payment_intent")),
                billing_email=customer_details.get("email") or session.get("customer_email"),
                billing_name=customer_details.get("name"),
                completed_at=now,
                meta={
                    "cartId": str(cart_id),
                    "stripeSessionMode": session.get("mode"),
                    "couponCode": metadata.get("couponCode"),
                    "affiliateRef": metadata.get("affiliateRef"),
                },
            )
            self.db.add(order)
            self.db.flush()

            order_items: list[OrderItem] = []
            for cart_item in cart_items:
                product = products.get(cart_item.product_id)
                order_item = OrderItem(
                    order_id=order.id,
                    product_id=cart_item.product_id,
                    variant_id=cart_item.variant_id,
                    seller_id=product.seller_id if product else None,
                    product_title=product.title if product else "Digital Product",
                    product_slug=product.slug if product else "unknown",
                    price=cart_item.unit_price,
                    currency=cart_item.currency or currency,
                )
                self.db.add(order_item)
                order_items.append(order_item)
            self.db.flush()

            for order_item in order_items:
                self.entitlements.issue(order_item, user_id, now=now)
                self.db.execute(
                    update(Product)
                    .where(Product.id == order_item.product_id)
                    .values(download_count=Product.download_count + 1)
                    .execution_options(synchronize_session=False)
                )

            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            self.db.rollback()
            winner = self._find_by_session(session_id)
            if winner is None:
                logger.exception("Integrity error creating order for session %s", session_id)
                raise
            logger.info("Concurrent delivery for session %s already created %s", session_id, winner.order_number)
            return ReconcileOutcome.DUPLICATE
        except Exception:
            self.db.rollback()
            logger.exception("Failed to create order for session %s", session_id)
            raise

        logger.info("Order %s created for user %s, session %s", order.order_number, user_id, session_id)

        self._completion_effects(order, order_items, cart_id, metadata).run()
        return ReconcileOutcome.CREATED

    def _load_purchased_items(self, cart_id: UUID, item_ids: list[UUID]) -> list[CartItem]:
        """Cart items named in the session metadata that still exist."""
        if not item_ids:
            return []
        stmt = select(CartItem).where(CartItem.cart_id == cart_id, CartItem.id.in_(item_ids))
        return list(self.db.scalars(stmt.order_by(CartItem.created_at, CartItem.id)))

    def _completion_effects(
        self,
        order: Order,
        order_items: list[OrderItem],
        cart_id: UUID,
        metadata: dict[str, Any],
    ) -> PostCommitEffects:
        items_payload = [
            {
                "order_item_id": str(item.id),
                "product_id": str(item.product_id),
                "seller_id": str(item.seller_id) if item.seller_id else None,
                "title": item.product_title,
                "price": str(item.price),
                "currency": item.currency,
            }
            for item in order_items
        ]

        effects = PostCommitEffects(f"order {order.order_number}")
        effects.add("mark_cart_converted", self.cart_service.mark_cart_converted, cart_id)
        effects.add("send_confirmation_email", self._send_confirmation, order, items_payload)
        effects.add("invalidate_order_caches", self._invalidate_order_caches, order.user_id)
        effects.add(
            "publish_order_completed",
            self.event_bus.publish,
            DomainEvent(
                event_type=EventType.ORDER_COMPLETED,
                payload={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "user_id": str(order.user_id),
                    "total": str(order.total),
                    "currency": order.currency,
                    "affiliate_ref": metadata.get("affiliateRef"),
                    "items": items_payload,
                },
            ),
        )
        for item in items_payload:
            if item["seller_id"]:
                effects.add(
                    "publish_seller_sale_made",
                    self.event_bus.publish,
                    DomainEvent(
                        event_type=EventType.SELLER_SALE_MADE,
                        payload={
                            "seller_id": item["seller_id"],
                            "order_id": str(order.id),
                            "product_id": item["product_id"],
                            "amount": item["price"],
                        },
                    ),
                )
        return effects

    # Failure

    def handle_payment_failed(self, session: dict[str, Any]) -> ReconcileOutcome:
        """Fail a not-yet-completed order for the session, if one exists."""
        session_id = session.get("id")
        logger.warning("Payment failed for checkout session: %s", session_id)

        order = self._find_by_session(session_id)
        if order is None or order.status == OrderStatus.COMPLETED:
            return ReconcileOutcome.NOOP

        changed = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status != OrderStatus.COMPLETED)
            .values(status=OrderStatus.FAILED, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if not changed:
            return ReconcileOutcome.NOOP

        logger.info("Order %s marked as FAILED due to payment failure", order.order_number)
        self._invalidate_order_caches(order.user_id)
        return ReconcileOutcome.FAILED

    # Refund

    def handle_charge_refunded(self, charge: dict[str, Any]) -> ReconcileOutcome:
        payment_intent_id = _object_id(charge.get("payment_intent"))
        if not payment_intent_id:
            logger.warning("Charge refunded event missing payment_intent ID")
            return ReconcileOutcome.NOOP

        order = self.db.scalars(
            select(Order).where(Order.stripe_payment_intent_id == payment_intent_id)
        ).first()
        if order is None:
            logger.warning("No order found for payment intent %s on refund", payment_intent_id)
            return ReconcileOutcome.NOOP

        self.apply_refund(order)
        return ReconcileOutcome.REFUNDED

    def apply_refund(self, order: Order) -> Order:
        """Mark an order refunded and deactivate all of its download tokens.

        Shared by the webhook and admin refund paths. Re-applying it to a
        refunded order leaves the same end state.
        """
        item_ids = select(OrderItem.id).where(OrderItem.order_id == order.id).scalar_subquery()
        try:
            self.db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(status=OrderStatus.REFUNDED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            deactivated = self.db.execute(
                update(DownloadToken)
                .where(DownloadToken.order_item_id.in_(item_ids), DownloadToken.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Failed to apply refund to order %s", order.order_number)
            raise

        self.db.refresh(order)
        logger.info("Order %s refunded, %d download tokens deactivated", order.order_number, deactivated)

        effects = PostCommitEffects(f"refund {order.order_number}")
        effects.add(
            "publish_order_refunded",
            self.event_bus.publish,
            DomainEvent(
                event_type=EventType.ORDER_REFUNDED,
                payload={"order_id": str(order.id), "user_id": str(order.user_id)},
            ),
        )
        effects.add("invalidate_order_caches", self._invalidate_order_caches, order.user_id)
        effects.run()
        return order

    def _send_confirmation(self, order: Order, items: list[dict[str, Any]]) -> None:
        to_email = order.billing_email
        if not to_email:
            user = self.db.get(User, order.user_id)
            to_email = user.email if user else None
        self.email_service.send_order_confirmation(
            to_email=to_email,
            order_number=order.order_number,
            items=items,
            total=order.total,
            currency=order.currency,
            customer_name=order.billing_name,
        )

    def _find_by_session(self, session_id: str | None) -> Order | None:
        if not session_id:
            return None
        return self.db.scalars(select(Order).where(Order.stripe_session_id == session_id)).first()

    def _invalidate_order_caches(self, user_id: UUID) -> None:
        self.cache.invalidate_tag(user_orders_tag(user_id))
        self.cache.invalidate_tag(ADMIN_ORDERS_TAG)
