"""Unit tests for CartService."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from marketplace.core.database import utc_now
from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.models import Cart, CartItem, CartStatus, ProductStatus
from marketplace.services.cart_service import (
    CartService,
    generate_session_id,
    get_cart_summary,
    session_cart_key,
    to_cents,
    user_cart_key,
)


class TestHelpers:
    """Tests for module-level helpers."""

    def test_generate_session_id_is_21_urlsafe_chars(self) -> None:
        session_id = generate_session_id()
        assert len(session_id) == 21
        assert all(c.isalnum() or c in "-_" for c in session_id)

    def test_generate_session_id_is_random(self) -> None:
        assert generate_session_id() != generate_session_id()

    def test_to_cents_rounds_half_up(self) -> None:
        assert to_cents(Decimal("19.99")) == 1999
        assert to_cents(Decimal("0.005")) == 1

    def test_summary_is_exact_in_cents(self, make_product, make_cart, cart_service: CartService) -> None:
        """19.99 + 9.99 must be 29.98, not a float approximation."""
        a = make_product(title="A", price="19.99")
        b = make_product(title="B", price="9.99")
        cart = make_cart(user_id=uuid4(), products=[a, b])

        summary = get_cart_summary(cart_service.load_items(cart.id), "USD")

        assert summary.subtotal == Decimal("29.98")
        assert summary.total == Decimal("29.98")
        assert summary.discount_amount == Decimal("0.00")
        assert summary.item_count == 2

    def test_summary_of_empty_cart(self) -> None:
        summary = get_cart_summary([], "EUR")
        assert summary.subtotal == Decimal("0.00")
        assert summary.item_count == 0
        assert summary.currency == "EUR"


class TestResolve:
    """Tests for cart resolution."""

    def test_creates_cart_for_new_user(self, cart_service: CartService, cache_backend) -> None:
        user_id = uuid4()
        cart = cart_service.resolve(user_id=user_id)

        assert cart.user_id == user_id
        assert cart.session_id is None
        assert cart.status == CartStatus.ACTIVE
        assert cart.expires_at is not None
        assert cache_backend.get(user_cart_key(user_id)) == str(cart.id)

    def test_returns_same_cart_on_second_call(self, cart_service: CartService) -> None:
        user_id = uuid4()
        first = cart_service.resolve(user_id=user_id)
        second = cart_service.resolve(user_id=user_id)
        assert first.id == second.id

    def test_guest_cart_keyed_by_session(self, cart_service: CartService, cache_backend) -> None:
        cart = cart_service.resolve(session_id="guest-session-1")

        assert cart.session_id == "guest-session-1"
        assert cart.user_id is None
        assert cache_backend.get(session_cart_key("guest-session-1")) == str(cart.id)

    def test_user_takes_precedence_over_session(self, cart_service: CartService) -> None:
        user_id = uuid4()
        cart = cart_service.resolve(user_id=user_id, session_id="ignored")
        assert cart.user_id == user_id
        assert cart.session_id is None

    def test_no_identity_creates_guest_cart_with_new_session(self, cart_service: CartService) -> None:
        cart = cart_service.resolve()
        assert cart.user_id is None
        assert cart.session_id is not None
        assert len(cart.session_id) == 21

    def test_cache_hit_refreshes_ttl(self, cart_service: CartService, cache_backend) -> None:
        user_id = uuid4()
        cart = cart_service.resolve(user_id=user_id)
        cache_backend.ttls[user_cart_key(user_id)] = 1

        assert cart_service.resolve(user_id=user_id).id == cart.id
        assert cache_backend.ttls[user_cart_key(user_id)] == 900

    def test_stale_cache_entry_falls_back_to_store(self, cart_service: CartService, cache_backend, make_cart) -> None:
        user_id = uuid4()
        cart = make_cart(user_id=user_id)
        cache_backend.set(user_cart_key(user_id), str(uuid4()), 900)

        assert cart_service.resolve(user_id=user_id).id == cart.id
        assert cache_backend.get(user_cart_key(user_id)) == str(cart.id)

    def test_cached_cart_of_another_owner_is_ignored(
        self, cart_service: CartService, cache_backend, make_cart
    ) -> None:
        mine = make_cart(user_id=uuid4())
        intruder = uuid4()
        cache_backend.set(user_cart_key(intruder), str(mine.id), 900)

        cart = cart_service.resolve(user_id=intruder)

        assert cart.id != mine.id
        assert cart.user_id == intruder

    def test_inactive_cart_is_not_resolved(self, cart_service: CartService, make_cart) -> None:
        user_id = uuid4()
        converted = make_cart(user_id=user_id, status=CartStatus.CONVERTED)

        cart = cart_service.resolve(user_id=user_id)

        assert cart.id != converted.id
        assert cart.status == CartStatus.ACTIVE

    def test_unavailable_cache_degrades_to_store(self, db_session, failing_cache) -> None:
        service = CartService(db_session, failing_cache)
        user_id = uuid4()

        first = service.resolve(user_id=user_id)
        second = service.resolve(user_id=user_id)

        assert first.id == second.id


class TestAddItem:
    """Tests for add_item."""

    def test_adds_item_at_current_price(self, cart_service: CartService, make_product) -> None:
        product = make_product(price="19.99")
        result = cart_service.add_item(uuid4(), None, product.id)

        assert len(result.cart.items) == 1
        assert result.cart.items[0].unit_price == Decimal("19.99")
        assert result.summary.total == Decimal("19.99")

    def test_adding_twice_is_idempotent(self, cart_service: CartService, make_product) -> None:
        product = make_product()
        user_id = uuid4()

        cart_service.add_item(user_id, None, product.id)
        result = cart_service.add_item(user_id, None, product.id)

        assert len(result.cart.items) == 1
        assert result.cart.items[0].quantity == 1

    def test_variant_is_a_distinct_line(self, cart_service: CartService, make_product, make_variant) -> None:
        product = make_product(price="19.99")
        variant = make_variant(product, price="49.00")
        user_id = uuid4()

        cart_service.add_item(user_id, None, product.id)
        result = cart_service.add_item(user_id, None, product.id, variant.id)

        assert len(result.cart.items) == 2
        assert result.summary.subtotal == Decimal("68.99")

    def test_variant_without_price_uses_product_price(
        self, cart_service: CartService, make_product, make_variant
    ) -> None:
        product = make_product(price="12.50")
        variant = make_variant(product, price=None)

        result = cart_service.add_item(uuid4(), None, product.id, variant.id)

        assert result.cart.items[0].unit_price == Decimal("12.50")

    def test_price_snapshot_survives_price_change(
        self, cart_service: CartService, make_product, db_session
    ) -> None:
        product = make_product(price="19.99")
        user_id = uuid4()
        cart_service.add_item(user_id, None, product.id)

        product.price = Decimal("99.00")
        db_session.commit()

        result = cart_service.get_cart_with_items(user_id=user_id)
        assert result.cart.items[0].unit_price == Decimal("19.99")

    def test_unknown_product_raises_not_found(self, cart_service: CartService) -> None:
        with pytest.raises(NotFoundError):
            cart_service.add_item(uuid4(), None, uuid4())

    def test_unpublished_product_raises_validation_error(self, cart_service: CartService, make_product) -> None:
        product = make_product(status=ProductStatus.DRAFT)
        with pytest.raises(ValidationError):
            cart_service.add_item(uuid4(), None, product.id)

    def test_variant_of_other_product_raises_not_found(
        self, cart_service: CartService, make_product, make_variant
    ) -> None:
        product = make_product(title="A")
        other_variant = make_variant(make_product(title="B"))
        with pytest.raises(NotFoundError):
            cart_service.add_item(uuid4(), None, product.id, other_variant.id)

    def test_works_with_failing_cache(self, db_session, failing_cache, make_product) -> None:
        service = CartService(db_session, failing_cache)
        product = make_product()

        result = service.add_item(None, "guest-abc", product.id)

        assert len(result.cart.items) == 1


class TestRemoveAndClear:
    """Tests for remove_item and clear_cart."""

    def test_remove_item(self, cart_service: CartService, make_product) -> None:
        user_id = uuid4()
        added = cart_service.add_item(user_id, None, make_product().id)

        result = cart_service.remove_item(user_id, None, added.cart.items[0].id)

        assert result.cart.items == []
        assert result.summary.total == Decimal("0.00")

    def test_remove_item_from_other_cart_raises_not_found(
        self, cart_service: CartService, make_product
    ) -> None:
        owner = uuid4()
        added = cart_service.add_item(owner, None, make_product().id)

        with pytest.raises(NotFoundError):
            cart_service.remove_item(uuid4(), None, added.cart.items[0].id)

    def test_clear_cart_removes_all_items(self, cart_service: CartService, make_product) -> None:
        user_id = uuid4()
        cart_service.add_item(user_id, None, make_product(title="A").id)
        cart_service.add_item(user_id, None, make_product(title="B").id)

        cart_service.clear_cart(user_id, None)

        assert cart_service.get_cart_with_items(user_id=user_id).cart.items == []

    def test_clear_without_cart_is_noop(self, cart_service: CartService, db_session) -> None:
        cart_service.clear_cart(uuid4(), None)
        assert db_session.scalars(select(Cart)).all() == []


class TestMergeGuestCart:
    """Tests for merge_guest_cart."""

    def test_moves_guest_items_and_drops_duplicates(
        self, cart_service: CartService, make_product, make_cart, db_session
    ) -> None:
        """Guest {A, B} into user {A} gives {A, B}, with A kept once."""
        a = make_product(title="A", price="10.00")
        b = make_product(title="B", price="5.00")
        user_id = uuid4()
        user_cart = make_cart(user_id=user_id, products=[a])
        guest_cart = make_cart(session_id="guest-1", products=[a, b])

        result = cart_service.merge_guest_cart(user_id, "guest-1")

        assert result.cart.id == user_cart.id
        assert sorted(i.product_id for i in result.cart.items) == sorted([a.id, b.id])
        assert all(i.quantity == 1 for i in result.cart.items)
        assert result.summary.total == Decimal("15.00")

        db_session.expire_all()
        guest = db_session.get(Cart, guest_cart.id)
        assert guest.status == CartStatus.MERGED
        assert db_session.scalars(select(CartItem).where(CartItem.cart_id == guest.id)).all() == []

    def test_merge_creates_user_cart_when_missing(
        self, cart_service: CartService, make_product, make_cart
    ) -> None:
        product = make_product()
        make_cart(session_id="guest-2", products=[product])
        user_id = uuid4()

        result = cart_service.merge_guest_cart(user_id, "guest-2")

        assert result.cart.user_id == user_id
        assert [i.product_id for i in result.cart.items] == [product.id]

    def test_merge_without_guest_cart_returns_user_cart(self, cart_service: CartService, make_cart) -> None:
        user_id = uuid4()
        user_cart = make_cart(user_id=user_id)

        result = cart_service.merge_guest_cart(user_id, "no-such-session")

        assert result.cart.id == user_cart.id

    def test_merge_updates_cache(self, cart_service: CartService, cache_backend, make_cart, make_product) -> None:
        user_id = uuid4()
        make_cart(session_id="guest-3", products=[make_product()])
        cache_backend.set(session_cart_key("guest-3"), "stale", 900)

        result = cart_service.merge_guest_cart(user_id, "guest-3")

        assert cache_backend.get(session_cart_key("guest-3")) is None
        assert cache_backend.get(user_cart_key(user_id)) == str(result.cart.id)


class TestLifecycle:
    """Tests for conversion and abandonment."""

    def test_mark_cart_converted_deletes_items(
        self, cart_service: CartService, make_cart, make_product, db_session
    ) -> None:
        cart = make_cart(user_id=uuid4(), products=[make_product()])

        assert cart_service.mark_cart_converted(cart.id) is True

        db_session.expire_all()
        assert db_session.get(Cart, cart.id).status == CartStatus.CONVERTED
        assert cart_service.load_items(cart.id) == []

    def test_mark_cart_converted_twice_reports_no_change(self, cart_service: CartService, make_cart) -> None:
        cart = make_cart(user_id=uuid4())
        cart_service.mark_cart_converted(cart.id)
        assert cart_service.mark_cart_converted(cart.id) is False

    def test_mark_missing_cart_converted(self, cart_service: CartService) -> None:
        assert cart_service.mark_cart_converted(uuid4()) is False

    def test_failed_conversion_leaves_session_usable(
        self, cart_service: CartService, make_cart, make_product, db_session
    ) -> None:
        cart = make_cart(user_id=uuid4(), products=[make_product()])
        # Incomplete row that fails the NOT NULL checks when the conversion commits
        db_session.add(CartItem(cart_id=cart.id))

        with pytest.raises(IntegrityError):
            cart_service.mark_cart_converted(cart.id)

        assert db_session.get(Cart, cart.id).status == CartStatus.ACTIVE
        assert len(cart_service.load_items(cart.id)) == 1

    def test_expire_abandoned_carts(self, cart_service: CartService, make_cart, db_session) -> None:
        stale = make_cart(user_id=uuid4())
        fresh = make_cart(user_id=uuid4())
        stale.expires_at = utc_now() - timedelta(hours=1)
        db_session.commit()

        assert cart_service.expire_abandoned_carts() == 1

        db_session.expire_all()
        assert db_session.get(Cart, stale.id).status == CartStatus.ABANDONED
        assert db_session.get(Cart, fresh.id).status == CartStatus.ACTIVE
