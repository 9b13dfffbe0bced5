"""Order queries and the admin refund operation."""

import hashlib
import json
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session, selectinload

from marketplace.core.cache import BestEffortCache
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import NotFoundError, StateConflictError
from marketplace.core.pagination import decode_cursor, encode_cursor
from marketplace.core.stripe import PaymentGateway
from marketplace.models.order import Order, OrderItem, OrderStatus
from marketplace.schemas.order import OrderDetailResponse, OrderListResponse, OrderResponse, RefundResponse
from marketplace.services.order_reconciler import ADMIN_ORDERS_TAG, OrderReconciler, user_orders_tag

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class OrderService:
    """Service for buyer and admin order reads and admin refunds."""

    def __init__(
        self,
        db: Session,
        cache: BestEffortCache,
        gateway: PaymentGateway,
        reconciler: OrderReconciler,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.gateway = gateway
        self.reconciler = reconciler
        self.settings = settings or get_settings()

    def list_user_orders(
        self,
        user_id: UUID,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        status: OrderStatus | None = None,
        search: str | None = None,
    ) -> OrderListResponse:
        """List the buyer's orders, newest first."""
        params = {"cursor": cursor, "limit": limit, "status": status, "search": search}
        cache_key = self._list_cache_key(f"orders:user:{user_id}", params)
        return self._cached_page(
            cache_key,
            user_orders_tag(user_id),
            lambda: self._page(
                select(Order).where(Order.user_id == user_id),
                cursor=cursor,
                limit=limit,
                status=status,
                search=search,
            ),
        )

    def list_all_orders(
        self,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        status: OrderStatus | None = None,
        search: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> OrderListResponse:
        """List every order for the admin surface, newest first."""
        params = {
            "cursor": cursor,
            "limit": limit,
            "status": status,
            "search": search,
            "date_from": date_from,
            "date_to": date_to,
        }
        cache_key = self._list_cache_key("orders:admin", params)
        return self._cached_page(
            cache_key,
            ADMIN_ORDERS_TAG,
            lambda: self._page(
                select(Order),
                cursor=cursor,
                limit=limit,
                status=status,
                search=search,
                date_from=date_from,
                date_to=date_to,
            ),
        )

    def get_order(self, user_id: UUID, order_id: UUID) -> OrderDetailResponse:
        """Get one of the buyer's orders with items and download tokens."""
        order = self.db.scalars(
            self._detail_query().where(Order.id == order_id, Order.user_id == user_id)
        ).first()
        if order is None:
            raise NotFoundError("Order not found")
        return OrderDetailResponse.model_validate(order)

    def get_order_admin(self, order_id: UUID) -> OrderDetailResponse:
        order = self.db.scalars(self._detail_query().where(Order.id == order_id)).first()
        if order is None:
            raise NotFoundError("Order not found")
        return OrderDetailResponse.model_validate(order)

    def verify_checkout_session(self, user_id: UUID, stripe_session_id: str) -> OrderDetailResponse:
        """Return the order created for a checkout session.

        Raises:
            NotFoundError: No order yet; the webhook may still be in flight.
        """
        order = self.db.scalars(
            self._detail_query().where(
                Order.stripe_session_id == stripe_session_id,
                Order.user_id == user_id,
            )
        ).first()
        if order is None:
            raise NotFoundError("Order not found for this checkout session. It may still be processing.")
        return OrderDetailResponse.model_validate(order)

    def refund_order(self, order_id: UUID) -> RefundResponse:
        """Refund a completed order through the payment processor.

        The local state change is the same one the ``charge.refunded`` webhook
        applies, so whichever arrives second changes nothing.

        Raises:
            NotFoundError: Unknown order.
            StateConflictError: Order not completed or has no payment intent.
            ExternalServiceError: Processor unreachable. Nothing local was changed.
        """
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status != OrderStatus.COMPLETED:
            raise StateConflictError(f"Only completed orders can be refunded (status: {order.status.value})")
        if not order.stripe_payment_intent_id:
            raise StateConflictError("Order has no payment intent to refund")

        refund = self.gateway.create_refund(
            order.stripe_payment_intent_id,
            metadata={"orderId": str(order.id), "orderNumber": order.order_number},
        )
        logger.info("Refund %s issued for order %s", refund.get("id"), order.order_number)

        order = self.reconciler.apply_refund(order)
        return RefundResponse(order_id=order.id, status=order.status, refund_id=refund.get("id"))

    # Helpers

    @staticmethod
    def _detail_query() -> Select:
        return select(Order).options(
            selectinload(Order.items).selectinload(OrderItem.download_tokens)
        )

    def _page(
        self,
        stmt: Select,
        cursor: str | None,
        limit: int,
        status: OrderStatus | None = None,
        search: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> OrderListResponse:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        if status:
            stmt = stmt.where(Order.status == status)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(Order.order_number.ilike(pattern), Order.billing_email.ilike(pattern)))
        if date_from:
            stmt = stmt.where(Order.created_at >= date_from)
        if date_to:
            stmt = stmt.where(Order.created_at <= date_to)
        boundary = decode_cursor(cursor)
        if boundary:
            stmt = stmt.where(Order.created_at < boundary)

        rows = list(self.db.scalars(stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit + 1)))
        has_more = len(rows) > limit
        rows = rows[:limit]
        return OrderListResponse(
            items=[OrderResponse.model_validate(order) for order in rows],
            has_more=has_more,
            next_cursor=encode_cursor(rows[-1].created_at) if has_more and rows else None,
        )

    def _cached_page(self, cache_key: str, tag: str, load) -> OrderListResponse:
        cached = self.cache.get(cache_key)
        if cached:
            try:
                return OrderListResponse.model_validate_json(cached)
            except ValueError:
                logger.warning("Discarding unreadable cached order page %s", cache_key)

        page = load()
        self.cache.set(cache_key, page.model_dump_json(), self.settings.order_list_cache_ttl, tags=[tag])
        return page

    @staticmethod
    def _list_cache_key(prefix: str, params: dict) -> str:
        digest = hashlib.sha256(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()[:16]
        return f"{prefix}:{digest}"
