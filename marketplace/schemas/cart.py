"""Cart Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.cart import CartStatus


class CartItemAdd(BaseModel):
    """Schema for adding an item via POST /cart/items."""

    product_id: UUID = Field(description="Product to add")
    variant_id: UUID | None = Field(default=None, description="Optional product variant")


class CartMergeRequest(BaseModel):
    """Schema for POST /cart/merge.

    The guest session may also be taken from the session header or cookie.
    """

    session_id: str | None = Field(default=None, description="Guest session token to merge from")


class CartItemResponse(BaseModel):
    """A cart line with its price snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    variant_id: UUID | None = None
    quantity: int
    unit_price: Decimal = Field(description="Price captured when the item was added")
    currency: str
    created_at: datetime


class CartSummary(BaseModel):
    """Totals computed over the loaded cart items."""

    subtotal: Decimal
    discount_amount: Decimal = Decimal("0.00")
    total: Decimal
    item_count: int
    currency: str


class CartResponse(BaseModel):
    """Schema for cart API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None = None
    session_id: str | None = None
    status: CartStatus
    currency: str
    expires_at: datetime | None = None
    items: list[CartItemResponse] = Field(default_factory=list)


class CartWithSummary(BaseModel):
    """Cart plus computed summary, returned by every cart endpoint."""

    cart: CartResponse
    summary: CartSummary
