"""FastAPI dependency injection functions."""

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from marketplace.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from marketplace.core.cache import BestEffortCache
from marketplace.core.config import get_settings
from marketplace.core.database import get_db
from marketplace.core.errors import AuthorizationError, ValidationError
from marketplace.core.stripe import PaymentGateway
from marketplace.schemas.auth import UserContext
from marketplace.services.cart_service import CartService, generate_session_id
from marketplace.services.checkout_service import CheckoutService
from marketplace.services.email_service import EmailService
from marketplace.services.entitlement_service import EntitlementService
from marketplace.services.file_storage import FileStorage, get_file_storage
from marketplace.services.order_reconciler import OrderReconciler
from marketplace.services.order_service import OrderService
from marketplace.services.side_effects import EventBus

SESSION_HEADER = "x-session-token"
MAX_SESSION_ID_LENGTH = 128

DbSession = Annotated[Session, Depends(get_db)]


# Long-lived collaborators, built once in the application lifespan


def get_cache(request: Request) -> BestEffortCache:
    return request.app.state.cache


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_email_service() -> EmailService:
    return EmailService()


def get_storage() -> FileStorage:
    return get_file_storage()


Cache = Annotated[BestEffortCache, Depends(get_cache)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
Bus = Annotated[EventBus, Depends(get_event_bus)]


# Request-scoped services


def get_cart_service(db: DbSession, cache: Cache) -> CartService:
    return CartService(db, cache)


def get_entitlement_service(
    db: DbSession,
    storage: Annotated[FileStorage, Depends(get_storage)],
) -> EntitlementService:
    return EntitlementService(db, storage=storage)


def get_checkout_service(
    db: DbSession,
    gateway: Gateway,
    cart_service: Annotated[CartService, Depends(get_cart_service)],
) -> CheckoutService:
    return CheckoutService(db, gateway, cart_service)


def get_order_reconciler(
    db: DbSession,
    cache: Cache,
    event_bus: Bus,
    email_service: Annotated[EmailService, Depends(get_email_service)],
    cart_service: Annotated[CartService, Depends(get_cart_service)],
    entitlements: Annotated[EntitlementService, Depends(get_entitlement_service)],
) -> OrderReconciler:
    return OrderReconciler(
        db,
        cache=cache,
        event_bus=event_bus,
        email_service=email_service,
        cart_service=cart_service,
        entitlements=entitlements,
    )


def get_order_service(
    db: DbSession,
    cache: Cache,
    gateway: Gateway,
    reconciler: Annotated[OrderReconciler, Depends(get_order_reconciler)],
) -> OrderService:
    return OrderService(db, cache, gateway, reconciler)


# Authentication


def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Extract and validate the current user from the Authorization header.

    Args:
        authorization: The Authorization header value (Bearer token).

    Returns:
        UserContext: The authenticated user's context.

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired.
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_jwt(parts[1]).to_user_context()
    except AuthError as e:
        detail = "Token has expired" if e.code == AuthErrorCode.TOKEN_EXPIRED else e.message
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> UserContext | None:
    """Return the user when an Authorization header is sent, None otherwise.

    A header that is present but invalid is still rejected.
    """
    if not authorization:
        return None
    return get_current_user(authorization)


CurrentUser = Annotated[UserContext, Depends(get_current_user)]
OptionalUser = Annotated[UserContext | None, Depends(get_optional_user)]


def get_admin_user(user: CurrentUser) -> UserContext:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


AdminUser = Annotated[UserContext, Depends(get_admin_user)]


# Guest session cookie utilities


def get_session_cookie_config() -> dict:
    """Get session cookie configuration from settings."""
    settings = get_settings()
    # SameSite=None is only accepted by browsers together with Secure
    samesite = "none" if settings.session_cookie_secure else "lax"
    return {
        "key": settings.session_cookie_name,
        "max_age": settings.session_cookie_max_age,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": samesite,
        "path": "/",
    }


def get_session_token(request: Request) -> str | None:
    """Extract the guest session id from the X-Session-Token header or cookie.

    The header wins so clients that block third-party cookies still work.
    """
    header_token = request.headers.get(SESSION_HEADER)
    if header_token:
        return header_token
    return request.cookies.get(get_session_cookie_config()["key"])


def set_session_cookie(response: Response, token: str) -> None:
    config = get_session_cookie_config()
    response.set_cookie(
        key=config["key"],
        value=token,
        max_age=config["max_age"],
        httponly=config["httponly"],
        secure=config["secure"],
        samesite=config["samesite"],
        path=config["path"],
    )


def clear_session_cookie(response: Response) -> None:
    config = get_session_cookie_config()
    response.delete_cookie(key=config["key"], path=config["path"])


@dataclass
class CartIdentity:
    """Who a cart request acts for: a signed-in user or a guest session.

    Exactly one of the two is set.
    """

    user_id: UUID | None = None
    session_id: str | None = None


def _validated_session_id(token: str | None) -> str | None:
    if token is None:
        return None
    token = token.strip()
    if not token:
        return None
    if len(token) > MAX_SESSION_ID_LENGTH:
        raise ValidationError("Invalid session token")
    return token


def get_cart_identity(request: Request, response: Response, user: OptionalUser) -> CartIdentity:
    """Resolve the cart owner for a request.

    A valid bearer token identifies a user. Otherwise the guest session id
    from the header or cookie is used, and when there is none a new one is
    generated and returned in both the cookie and the ``x-session-token``
    response header.
    """
    if user:
        return CartIdentity(user_id=user.user_id)

    session_id = _validated_session_id(get_session_token(request))
    if session_id:
        return CartIdentity(session_id=session_id)

    session_id = generate_session_id()
    set_session_cookie(response, session_id)
    response.headers[SESSION_HEADER] = session_id
    return CartIdentity(session_id=session_id)


def get_guest_session_id(request: Request) -> str | None:
    """Guest session id sent with the request, without creating one."""
    return _validated_session_id(get_session_token(request))


CartOwner = Annotated[CartIdentity, Depends(get_cart_identity)]
GuestSessionId = Annotated[str | None, Depends(get_guest_session_id)]
