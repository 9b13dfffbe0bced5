"""Cart and cart item tables.

One active cart per user and per guest session is enforced with partial
unique indexes, and (cart, product, variant) uniqueness with a unique
constraint on ``variant_key``, so concurrent requests cannot break either
rule even when the application-level checks race.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.core.database import Base, UTCDateTime, str_enum, utc_now


class CartStatus(str, enum.Enum):
    ACTIVE = "active"
    MERGED = "merged"
    CONVERTED = "converted"
    ABANDONED = "abandoned"


ACTIVE_ONLY = text("status = 'active'")


def variant_key(variant_id: uuid.UUID | None) -> str:
    """Non-null stand-in for ``variant_id`` so the unique constraint also covers base products."""
    return str(variant_id) if variant_id else ""


class Cart(Base):
    """A buyer's in-progress selection, owned by a user or by a guest session."""

    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint(
            "NOT (user_id IS NOT NULL AND session_id IS NOT NULL)",
            name="ck_carts_single_owner",
        ),
        Index(
            "uq_carts_active_user",
            "user_id",
            unique=True,
            sqlite_where=ACTIVE_ONLY,
            postgresql_where=ACTIVE_ONLY,
        ),
        Index(
            "uq_carts_active_session",
            "session_id",
            unique=True,
            sqlite_where=ACTIVE_ONLY,
            postgresql_where=ACTIVE_ONLY,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[CartStatus] = mapped_column(
        str_enum(CartStatus), default=CartStatus.ACTIVE, nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.created_at",
    )

    def __repr__(self):
        return f"<Cart {self.id} {self.status.value}>"


class CartItem(Base):
    """One line of a cart with the price captured when it was added."""

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "variant_key", name="uq_cart_items_product_variant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    variant_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("product_variants.id"), nullable=True
    )
    variant_key: Mapped[str] = mapped_column(String(36), default="", nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")
