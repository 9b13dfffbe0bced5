"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Generator
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-unit-tests")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("STORAGE_BUCKET", "")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

from marketplace.core.cache import TAG_PREFIX, BestEffortCache, CacheBackend  # noqa: E402
from marketplace.core.database import Base, utc_now  # noqa: E402
from marketplace.core.stripe import PaymentGateway  # noqa: E402
from marketplace.models import (  # noqa: E402
    Cart,
    CartItem,
    CartStatus,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    ProductFile,
    ProductStatus,
    ProductVariant,
    User,
    variant_key,
)
from marketplace.services.side_effects import EventBus  # noqa: E402

TEST_JWT_SECRET = os.environ["JWT_SECRET"]


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache backend; TTLs are recorded but never enforced."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.tags: dict[str, set[str]] = defaultdict(set)

    def get(self, key: str) -> str | None:
        return self.store.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.store[key] = value
        self.ttls[key] = ttl_seconds

    def expire(self, key: str, ttl_seconds: int) -> None:
        if key in self.store:
            self.ttls[key] = ttl_seconds

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key.startswith(TAG_PREFIX):
                removed += int(self.tags.pop(key[len(TAG_PREFIX):], None) is not None)
            elif self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        self.tags[tag].add(key)

    def tag_members(self, tag: str) -> set[str]:
        return set(self.tags.get(tag, set()))

    def ping(self) -> bool:
        return True


class FailingCacheBackend(CacheBackend):
    """Backend whose every operation raises, like an unreachable Redis."""

    def _fail(self, *args: Any, **kwargs: Any) -> Any:
        raise ConnectionError("cache unavailable")

    get = set = expire = delete = tag = tag_members = ping = _fail


# Settings


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache."""
    from marketplace.core.config import get_settings

    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()


# Database


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# Collaborators


@pytest.fixture
def cache_backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def cache(cache_backend: InMemoryCacheBackend) -> BestEffortCache:
    return BestEffortCache(cache_backend)


@pytest.fixture
def failing_cache() -> BestEffortCache:
    return BestEffortCache(FailingCacheBackend())


@pytest.fixture
def mock_gateway() -> MagicMock:
    """Payment gateway mock with successful default responses."""
    gateway = MagicMock(spec=PaymentGateway)
    gateway.create_customer.return_value = "cus_test_123"
    gateway.create_checkout_session.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    gateway.create_refund.return_value = {"id": "re_test_123", "status": "succeeded"}
    return gateway


@pytest.fixture
def mock_email_service() -> MagicMock:
    email = MagicMock()
    email.send_order_confirmation.return_value = {"success": True, "email_id": "email_123"}
    return email


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def storage() -> Any:
    from marketplace.services.file_storage import FileStorage

    return FileStorage(
        bucket="product-files",
        region="us-east-1",
        url_ttl_seconds=300,
        endpoint_url="https://files.test",
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
    )


# Services


@pytest.fixture
def cart_service(db_session: Session, cache: BestEffortCache) -> Any:
    from marketplace.services.cart_service import CartService

    return CartService(db_session, cache)


@pytest.fixture
def entitlement_service(db_session: Session, storage: Any) -> Any:
    from marketplace.services.entitlement_service import EntitlementService

    return EntitlementService(db_session, storage=storage)


@pytest.fixture
def checkout_service(db_session: Session, mock_gateway: MagicMock, cart_service: Any) -> Any:
    from marketplace.services.checkout_service import CheckoutService

    return CheckoutService(db_session, mock_gateway, cart_service)


@pytest.fixture
def reconciler(
    db_session: Session,
    cache: BestEffortCache,
    event_bus: EventBus,
    mock_email_service: MagicMock,
    cart_service: Any,
    entitlement_service: Any,
) -> Any:
    from marketplace.services.order_reconciler import OrderReconciler

    return OrderReconciler(
        db_session,
        cache=cache,
        event_bus=event_bus,
        email_service=mock_email_service,
        cart_service=cart_service,
        entitlements=entitlement_service,
    )


@pytest.fixture
def order_service(db_session: Session, cache: BestEffortCache, mock_gateway: MagicMock, reconciler: Any) -> Any:
    from marketplace.services.order_service import OrderService

    return OrderService(db_session, cache, mock_gateway, reconciler)


# Data factories


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _make(email: str | None = None, role: str = "buyer", **kwargs: Any) -> User:
        user = User(email=email or f"user-{uuid.uuid4().hex[:8]}@example.com", role=role, **kwargs)
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_product(db_session: Session) -> Callable[..., Product]:
    def _make(
        title: str = "Icon Pack",
        price: str = "19.99",
        status: ProductStatus = ProductStatus.PUBLISHED,
        with_file: bool = True,
        seller_id: uuid.UUID | None = None,
    ) -> Product:
        product = Product(
            title=title,
            slug=f"{title.lower().replace(' ', '-')}-{uuid.uuid4().hex[:6]}",
            status=status,
            price=Decimal(price),
            currency="USD",
            seller_id=seller_id or uuid.uuid4(),
        )
        db_session.add(product)
        db_session.flush()
        if with_file:
            db_session.add(
                ProductFile(
                    product_id=product.id,
                    file_key=f"products/{product.id}/{product.slug}.zip",
                    file_name=f"{product.slug}.zip",
                    mime_type="application/zip",
                    file_size=2048,
                )
            )
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_variant(db_session: Session) -> Callable[..., ProductVariant]:
    def _make(product: Product, name: str = "Extended license", price: str | None = "49.00") -> ProductVariant:
        variant = ProductVariant(product_id=product.id, name=name, price=Decimal(price) if price else None)
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture
def make_cart(db_session: Session) -> Callable[..., Cart]:
    """Create an active cart holding the given products at their current price."""

    def _make(
        user_id: uuid.UUID | None = None,
        session_id: str | None = None,
        products: list[Product] | None = None,
        status: CartStatus = CartStatus.ACTIVE,
    ) -> Cart:
        cart = Cart(
            user_id=user_id,
            session_id=session_id if user_id is None else None,
            status=status,
            currency="USD",
            expires_at=utc_now() + timedelta(hours=24),
            meta={},
        )
        db_session.add(cart)
        db_session.flush()
        for product in products or []:
            db_session.add(
                CartItem(
                    cart_id=cart.id,
                    product_id=product.id,
                    variant_id=None,
                    variant_key=variant_key(None),
                    quantity=1,
                    unit_price=product.price,
                    currency=product.currency,
                )
            )
        db_session.commit()
        return cart

    return _make


@pytest.fixture
def make_order(db_session: Session) -> Callable[..., Order]:
    """Create an order directly, bypassing reconciliation."""

    def _make(
        user_id: uuid.UUID,
        status: OrderStatus = OrderStatus.COMPLETED,
        total: str = "19.99",
        created_at: Any = None,
        payment_intent: str | None = "pi_test_123",
        products: list[Product] | None = None,
        order_number: str | None = None,
    ) -> Order:
        suffix = uuid.uuid4().hex[:6].upper()
        order = Order(
            user_id=user_id,
            order_number=order_number or f"ORD-20260101-{suffix}",
            status=status,
            subtotal=Decimal(total),
            discount_amount=Decimal("0"),
            total=Decimal(total),
            currency="USD",
            stripe_session_id=f"cs_test_{uuid.uuid4().hex}",
            stripe_payment_intent_id=payment_intent,
            billing_email="buyer@example.com",
            created_at=created_at or utc_now(),
            meta={},
        )
        db_session.add(order)
        db_session.flush()
        for product in products or []:
            db_session.add(
                OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    seller_id=product.seller_id,
                    product_title=product.title,
                    product_slug=product.slug,
                    price=product.price,
                    currency=product.currency,
                )
            )
        db_session.commit()
        return order

    return _make


# Stripe payloads


@pytest.fixture
def checkout_completed_event(db_session: Session) -> Callable[..., dict]:
    """Build a ``checkout.session.completed`` event for a cart.

    Without ``order_items`` the metadata names every item currently in the cart,
    as checkout would have.
    """

    def _make(
        user_id: uuid.UUID,
        cart_id: uuid.UUID,
        session_id: str = "cs_test_123",
        order_items: list[uuid.UUID] | None = None,
        amount_total: int | None = None,
        affiliate_ref: str | None = None,
        metadata_type: str = "digital_product_purchase",
    ) -> dict:
        from marketplace.services.checkout_service import order_items_metadata

        if order_items is None:
            order_items = list(
                db_session.scalars(
                    select(CartItem.id).where(CartItem.cart_id == cart_id).order_by(CartItem.created_at, CartItem.id)
                )
            )
        metadata = {
            "type": metadata_type,
            "userId": str(user_id),
            "cartId": str(cart_id),
            **order_items_metadata(order_items),
        }
        if affiliate_ref:
            metadata["affiliateRef"] = affiliate_ref
        return {
            "id": f"evt_{uuid.uuid4().hex[:12]}",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "mode": "payment",
                    "payment_intent": "pi_test_123",
                    "amount_total": amount_total,
                    "customer_details": {"email": "buyer@example.com", "name": "Test Buyer"},
                    "metadata": metadata,
                }
            },
        }

    return _make


# Auth


def create_test_token(
    sub: str = "550e8400-e29b-41d4-a716-446655440000",
    email: str | None = "test@example.com",
    role: str | None = "buyer",
    exp_offset: int = 3600,
    secret: str = TEST_JWT_SECRET,
    algorithm: str = "HS256",
) -> str:
    """Create a signed access token.

    Args:
        sub: Subject (user ID).
        email: User email.
        role: User role.
        exp_offset: Seconds from now for expiration (negative for expired).
        secret: Signing secret.
        algorithm: Signing algorithm.

    Returns:
        str: Encoded JWT token.
    """
    now = int(time.time())
    payload = {"sub": sub, "email": email, "role": role, "exp": now + exp_offset, "iat": now}
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    def _make(user_id: uuid.UUID | str, role: str = "buyer", email: str = "buyer@example.com") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_test_token(sub=str(user_id), role=role, email=email)}"}

    return _make


# Application


@pytest.fixture
def client(
    session_factory: sessionmaker[Session],
    cache: BestEffortCache,
    mock_gateway: MagicMock,
    event_bus: EventBus,
    mock_email_service: MagicMock,
    storage: Any,
) -> Generator[TestClient, None, None]:
    """Provide a test client whose collaborators are the test doubles above.

    Each request gets its own session on the shared in-memory engine.
    """
    from marketplace.api import deps
    from marketplace.core.database import get_db
    from marketplace.main import app

    def override_get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_cache] = lambda: cache
    app.dependency_overrides[deps.get_payment_gateway] = lambda: mock_gateway
    app.dependency_overrides[deps.get_event_bus] = lambda: event_bus
    app.dependency_overrides[deps.get_email_service] = lambda: mock_email_service
    app.dependency_overrides[deps.get_storage] = lambda: storage

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
