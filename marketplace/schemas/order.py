"""Order Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.order import OrderStatus
from marketplace.schemas.common import CursorPage


class DownloadTokenResponse(BaseModel):
    """Entitlement attached to an order item."""

    model_config = ConfigDict(from_attributes=True)

    token: str
    expires_at: datetime
    max_downloads: int
    download_count: int
    is_active: bool


class OrderItemResponse(BaseModel):
    """Purchased line with its denormalized product snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    variant_id: UUID | None = None
    product_title: str
    product_slug: str
    price: Decimal
    currency: str
    download_tokens: list[DownloadTokenResponse] = Field(default_factory=list)


class OrderResponse(BaseModel):
    """Schema for order list entries."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    order_number: str
    status: OrderStatus
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str
    stripe_session_id: str
    stripe_payment_intent_id: str | None = None
    billing_email: str | None = None
    billing_name: str | None = None
    completed_at: datetime | None = None
    created_at: datetime


class OrderDetailResponse(OrderResponse):
    """Order with items and download tokens."""

    items: list[OrderItemResponse] = Field(default_factory=list)


class OrderListResponse(CursorPage):
    """Cursor-paginated order list."""

    items: list[OrderResponse] = Field(description="List of orders")


class RefundResponse(BaseModel):
    """Result of an admin refund."""

    order_id: UUID
    status: OrderStatus
    refund_id: str | None = None
