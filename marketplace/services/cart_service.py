"""Cart resolution and mutation business logic.

The relational store is authoritative for carts. The cache only remembers
which cart id belongs to a user or guest session, and every cache call goes
through ``BestEffortCache`` so an unavailable cache degrades to store reads.
"""

import logging
import secrets
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.cache import BestEffortCache
from marketplace.core.config import Settings, get_settings
from marketplace.core.database import utc_now
from marketplace.core.errors import ConflictError, NotFoundError, ValidationError
from marketplace.models.cart import Cart, CartItem, CartStatus, variant_key
from marketplace.models.catalog import Product, ProductStatus, ProductVariant
from marketplace.schemas.cart import CartItemResponse, CartResponse, CartSummary, CartWithSummary

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def user_cart_key(user_id: UUID | str) -> str:
    return f"cart:user:{user_id}"


def session_cart_key(session_id: str) -> str:
    return f"cart:session:{session_id}"


def generate_session_id() -> str:
    """Random guest session id, 21 url-safe characters."""
    return secrets.token_urlsafe(16)[:21]


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_cart_summary(items: list[CartItem], currency: str) -> CartSummary:
    """Compute cart totals in integer cents so repeated additions never drift.

    The discount is a fixed zero until coupons are applied at the cart level.
    """
    subtotal_cents = sum(to_cents(item.unit_price) * item.quantity for item in items)
    discount_cents = 0
    subtotal = (Decimal(subtotal_cents) / 100).quantize(CENT)
    return CartSummary(
        subtotal=subtotal,
        discount_amount=(Decimal(discount_cents) / 100).quantize(CENT),
        total=(Decimal(subtotal_cents - discount_cents) / 100).quantize(CENT),
        item_count=sum(item.quantity for item in items),
        currency=currency,
    )


class CartService:
    """Service for resolving, mutating and merging carts."""

    def __init__(self, db: Session, cache: BestEffortCache, settings: Settings | None = None) -> None:
        """Initialize cart service.

        Args:
            db: Request-scoped database session.
            cache: Best-effort cache façade.
            settings: Optional settings override.
        """
        self.db = db
        self.cache = cache
        self.settings = settings or get_settings()

    @property
    def cache_ttl(self) -> int:
        return self.settings.cart_cache_ttl_seconds

    # Resolution

    def resolve(self, user_id: UUID | None = None, session_id: str | None = None) -> Cart:
        """Return the active cart for the identity, creating it if needed.

        Users take precedence over guest sessions. With neither, a new guest
        cart is created under a freshly generated session id.
        """
        if user_id:
            return self._resolve_owned(user_cart_key(user_id), user_id=user_id)
        if session_id:
            return self._resolve_owned(session_cart_key(session_id), session_id=session_id)
        return self._create_cart(session_id=generate_session_id())

    def find_active(self, user_id: UUID | None = None, session_id: str | None = None) -> Cart | None:
        """Find the active cart for the identity without creating one."""
        if user_id:
            stmt = select(Cart).where(Cart.user_id == user_id)
        elif session_id:
            stmt = select(Cart).where(Cart.session_id == session_id)
        else:
            return None
        stmt = stmt.where(Cart.status == CartStatus.ACTIVE).order_by(Cart.created_at.desc()).limit(1)
        return self.db.scalars(stmt).first()

    def _resolve_owned(self, cache_key: str, user_id: UUID | None = None, session_id: str | None = None) -> Cart:
        cached_id = self.cache.get(cache_key)
        if cached_id:
            cart = self._load_cached(cached_id, user_id=user_id, session_id=session_id)
            if cart:
                self.cache.expire(cache_key, self.cache_ttl)
                return cart
            logger.debug("Stale cart cache entry %s -> %s", cache_key, cached_id)

        cart = self.find_active(user_id=user_id, session_id=session_id)
        if cart:
            self.cache.set(cache_key, str(cart.id), self.cache_ttl)
            return cart

        return self._create_cart(user_id=user_id, session_id=session_id)

    def _load_cached(self, cached_id: str, user_id: UUID | None, session_id: str | None) -> Cart | None:
        try:
            cart_id = UUID(cached_id)
        except ValueError:
            return None
        cart = self.db.get(Cart, cart_id)
        if cart is None or cart.status != CartStatus.ACTIVE:
            return None
        # Ownership is re-checked so a corrupted entry cannot hand out someone else's cart
        if cart.user_id != user_id or cart.session_id != session_id:
            return None
        return cart

    def _create_cart(self, user_id: UUID | None = None, session_id: str | None = None) -> Cart:
        cart = Cart(
            user_id=user_id,
            session_id=session_id,
            status=CartStatus.ACTIVE,
            currency=self.settings.default_currency,
            expires_at=utc_now() + timedelta(hours=self.settings.cart_expiry_hours),
            meta={},
        )
        self.db.add(cart)
        try:
            self.db.commit()
        except IntegrityError as e:
            # Another request created the active cart first; the unique index kept it single
            self.db.rollback()
            existing = self.find_active(user_id=user_id, session_id=session_id)
            if existing is None:
                raise ConflictError("Could not create cart, please retry") from e
            logger.info("Concurrent cart creation for user=%s session=%s, using %s", user_id, session_id, existing.id)
            cart = existing
        else:
            logger.debug("Created cart %s for user=%s session=%s", cart.id, user_id, session_id)

        key = user_cart_key(user_id) if user_id else session_cart_key(session_id)
        self.cache.set(key, str(cart.id), self.cache_ttl)
        return cart

    # Reads

    def load_items(self, cart_id: UUID) -> list[CartItem]:
        stmt = select(CartItem).where(CartItem.cart_id == cart_id).order_by(CartItem.created_at, CartItem.id)
        return list(self.db.scalars(stmt).all())

    def build_view(self, cart: Cart) -> CartWithSummary:
        items = self.load_items(cart.id)
        return CartWithSummary(
            cart=CartResponse(
                id=cart.id,
                user_id=cart.user_id,
                session_id=cart.session_id,
                status=cart.status,
                currency=cart.currency,
                expires_at=cart.expires_at,
                items=[CartItemResponse.model_validate(item) for item in items],
            ),
            summary=get_cart_summary(items, cart.currency),
        )

    def get_cart_with_items(self, user_id: UUID | None = None, session_id: str | None = None) -> CartWithSummary:
        return self.build_view(self.resolve(user_id, session_id))

    # Mutations

    def _lock(self, cart_id: UUID) -> None:
        """Take the row lock that serializes item mutations on one cart."""
        self.db.execute(select(Cart.id).where(Cart.id == cart_id).with_for_update())

    def add_item(
        self,
        user_id: UUID | None,
        session_id: str | None,
        product_id: UUID,
        variant_id: UUID | None = None,
    ) -> CartWithSummary:
        """Add a product (optionally a variant) to the cart.

        Adding the same product and variant twice leaves the cart unchanged.

        Raises:
            NotFoundError: Unknown product, or variant not belonging to it.
            ValidationError: Product is not published.
        """
        cart = self.resolve(user_id, session_id)
        self._lock(cart.id)

        product = self.db.get(Product, product_id)
        if product is None:
            self.db.rollback()
            raise NotFoundError(f'Digital product with ID "{product_id}" not found')
        if product.status != ProductStatus.PUBLISHED:
            self.db.rollback()
            raise ValidationError("This product is not currently available for purchase")

        variant = None
        if variant_id:
            variant = self.db.scalars(
                select(ProductVariant).where(
                    ProductVariant.id == variant_id,
                    ProductVariant.product_id == product_id,
                )
            ).first()
            if variant is None:
                self.db.rollback()
                raise NotFoundError(f'Variant with ID "{variant_id}" not found for product "{product_id}"')

        key = variant_key(variant_id)
        existing = self.db.scalars(
            select(CartItem.id).where(
                CartItem.cart_id == cart.id,
                CartItem.product_id == product_id,
                CartItem.variant_key == key,
            )
        ).first()
        if existing:
            self.db.rollback()
            logger.debug("Item already in cart %s: product=%s variant=%s", cart.id, product_id, variant_id)
            return self.build_view(cart)

        unit_price = variant.price if variant is not None and variant.price is not None else product.price
        self.db.add(
            CartItem(
                cart_id=cart.id,
                product_id=product_id,
                variant_id=variant_id,
                variant_key=key,
                quantity=1,
                unit_price=unit_price,
                currency=product.currency,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent add of the same product and variant won
            self.db.rollback()
            logger.debug("Concurrent add ignored for cart %s product=%s", cart.id, product_id)
        else:
            logger.debug("Added item to cart %s: product=%s variant=%s price=%s", cart.id, product_id, variant_id, unit_price)

        self.invalidate_cache(cart.user_id, cart.session_id)
        return self.build_view(cart)

    def remove_item(self, user_id: UUID | None, session_id: str | None, item_id: UUID) -> CartWithSummary:
        """Remove one line from the caller's cart.

        Raises:
            NotFoundError: The item is not in the caller's cart.
        """
        cart = self.resolve(user_id, session_id)
        self._lock(cart.id)

        item = self.db.scalars(
            select(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart.id)
        ).first()
        if item is None:
            self.db.rollback()
            raise NotFoundError(f'Cart item with ID "{item_id}" not found in your cart')

        self.db.delete(item)
        self.db.commit()
        logger.debug("Removed item %s from cart %s", item_id, cart.id)

        self.invalidate_cache(cart.user_id, cart.session_id)
        return self.build_view(cart)

    def clear_cart(self, user_id: UUID | None, session_id: str | None) -> None:
        """Remove every item from the active cart, if there is one."""
        cart = self.find_active(user_id=user_id, session_id=session_id)
        if cart is None:
            return

        self._lock(cart.id)
        self.db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        self.db.commit()
        logger.debug("Cleared all items from cart %s", cart.id)

        self.invalidate_cache(cart.user_id, cart.session_id)

    def merge_guest_cart(self, user_id: UUID, session_id: str) -> CartWithSummary:
        """Fold the guest session's cart into the user's cart after login.

        Guest items whose product and variant are already in the user cart are
        dropped, never summed. The guest cart ends in ``merged`` with no items.
        """
        guest = self.find_active(session_id=session_id)
        if guest is None:
            logger.debug("No active guest cart for session %s, returning user cart", session_id)
            return self.get_cart_with_items(user_id=user_id)

        user_cart = self.resolve(user_id=user_id)
        # Lock in a stable order so two concurrent merges cannot deadlock
        for cart_id in sorted([guest.id, user_cart.id], key=str):
            self._lock(cart_id)

        present = {
            (row.product_id, row.variant_key)
            for row in self.db.execute(
                select(CartItem.product_id, CartItem.variant_key).where(CartItem.cart_id == user_cart.id)
            )
        }
        move_ids: list[UUID] = []
        drop_ids: list[UUID] = []
        for item in self.load_items(guest.id):
            combo = (item.product_id, item.variant_key)
            if combo in present:
                drop_ids.append(item.id)
            else:
                present.add(combo)
                move_ids.append(item.id)

        try:
            if move_ids:
                self.db.execute(
                    update(CartItem)
                    .where(CartItem.id.in_(move_ids))
                    .values(cart_id=user_cart.id)
                    .execution_options(synchronize_session=False)
                )
            if drop_ids:
                self.db.execute(
                    delete(CartItem)
                    .where(CartItem.id.in_(drop_ids))
                    .execution_options(synchronize_session=False)
                )
            self.db.execute(
                update(Cart)
                .where(Cart.id == guest.id)
                .values(status=CartStatus.MERGED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning("Merge of guest cart %s into %s conflicted: %s", guest.id, user_cart.id, e)
            raise ConflictError("Cart changed during merge, please retry") from e

        self.db.expire_all()
        logger.info(
            "Merged guest cart %s into user cart %s (moved=%d dropped=%d)",
            guest.id,
            user_cart.id,
            len(move_ids),
            len(drop_ids),
        )

        self.cache.delete(session_cart_key(session_id))
        self.cache.set(user_cart_key(user_id), str(user_cart.id), self.cache_ttl)
        return self.build_view(user_cart)

    def mark_cart_converted(self, cart_id: UUID) -> bool:
        """Move an active cart to ``converted`` and drop its items.

        Returns:
            bool: False when the cart was missing or no longer active.
        """
        cart = self.db.get(Cart, cart_id)
        if cart is None:
            logger.warning("Cart %s not found when marking converted", cart_id)
            return False

        try:
            self.db.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
            converted = self.db.execute(
                update(Cart)
                .where(Cart.id == cart_id, Cart.status == CartStatus.ACTIVE)
                .values(status=CartStatus.CONVERTED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
        except Exception:
            # Leave the session usable for whatever runs next
            self.db.rollback()
            raise
        self.db.refresh(cart)

        self.invalidate_cache(cart.user_id, cart.session_id)
        logger.debug("Cart %s marked as converted (changed=%s)", cart_id, bool(converted))
        return bool(converted)

    def expire_abandoned_carts(self, now: datetime | None = None) -> int:
        """Move active carts past their expiry to ``abandoned``.

        Returns:
            int: Number of carts abandoned.
        """
        now = now or utc_now()
        result = self.db.execute(
            update(Cart)
            .where(Cart.status == CartStatus.ACTIVE, Cart.expires_at.is_not(None), Cart.expires_at < now)
            .values(status=CartStatus.ABANDONED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Abandoned %d expired carts", result.rowcount)
        return result.rowcount

    def invalidate_cache(self, user_id: UUID | None, session_id: str | None) -> None:
        keys = []
        if user_id:
            keys.append(user_cart_key(user_id))
        if session_id:
            keys.append(session_cart_key(session_id))
        self.cache.delete(*keys)
