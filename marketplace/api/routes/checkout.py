"""Checkout API routes for Stripe integration."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from marketplace.api.deps import CurrentUser, get_checkout_service, get_order_service
from marketplace.schemas.checkout import CheckoutSessionCreate, CheckoutSessionResponse
from marketplace.schemas.order import OrderDetailResponse
from marketplace.services.checkout_service import CheckoutService
from marketplace.services.order_service import OrderService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "/session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Stripe Checkout Session",
    description="Creates a hosted checkout session for the signed-in user's cart. No order exists until payment completes.",
)
def create_checkout_session(
    data: CheckoutSessionCreate,
    user: CurrentUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
) -> CheckoutSessionResponse:
    """Create a Stripe Checkout Session for the user's cart.

    The frontend should redirect to the returned url. After payment the
    buyer lands on ``success_url`` with ``session_id`` in the query string.

    Raises:
        ValidationError: 400 if the cart is empty or the coupon is unusable.
        ExternalServiceError: 503 if Stripe is unreachable.
    """
    return service.create_checkout_session(
        user_id=user.user_id,
        success_url=str(data.success_url),
        cancel_url=str(data.cancel_url),
        coupon_code=data.coupon_code,
        affiliate_ref=data.affiliate_ref,
        email=user.email,
    )


@router.get(
    "/session/{session_id}",
    response_model=OrderDetailResponse,
    summary="Verify checkout session",
    description="Returns the order created for a completed checkout session. 404 while the webhook is still in flight.",
)
def verify_checkout_session(
    session_id: str,
    user: CurrentUser,
    service: Annotated[OrderService, Depends(get_order_service)],
) -> OrderDetailResponse:
    return service.verify_checkout_session(user_id=user.user_id, stripe_session_id=session_id)
