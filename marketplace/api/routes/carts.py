"""Cart API routes for signed-in users and guest sessions."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from marketplace.api.deps import CartOwner, CurrentUser, GuestSessionId, clear_session_cookie, get_cart_service
from marketplace.core.errors import ValidationError
from marketplace.schemas.cart import CartItemAdd, CartMergeRequest, CartWithSummary
from marketplace.services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])

CartServiceDep = Annotated[CartService, Depends(get_cart_service)]


@router.get(
    "",
    response_model=CartWithSummary,
    summary="Get current cart",
    description="Returns the caller's active cart with items and totals, creating an empty cart if needed.",
)
def get_cart(owner: CartOwner, service: CartServiceDep) -> CartWithSummary:
    return service.get_cart_with_items(user_id=owner.user_id, session_id=owner.session_id)


@router.post(
    "/items",
    response_model=CartWithSummary,
    summary="Add item to cart",
    description="Adds a published product, optionally a specific variant. Adding the same item twice has no effect.",
)
def add_item(data: CartItemAdd, owner: CartOwner, service: CartServiceDep) -> CartWithSummary:
    """Add an item to the caller's cart.

    The price is captured now and is what checkout will bill, even if the
    product price changes later.
    """
    return service.add_item(
        user_id=owner.user_id,
        session_id=owner.session_id,
        product_id=data.product_id,
        variant_id=data.variant_id,
    )


@router.delete(
    "/items/{item_id}",
    response_model=CartWithSummary,
    summary="Remove item from cart",
)
def remove_item(item_id: UUID, owner: CartOwner, service: CartServiceDep) -> CartWithSummary:
    return service.remove_item(user_id=owner.user_id, session_id=owner.session_id, item_id=item_id)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear cart",
)
def clear_cart(owner: CartOwner, service: CartServiceDep) -> Response:
    service.clear_cart(user_id=owner.user_id, session_id=owner.session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/merge",
    response_model=CartWithSummary,
    summary="Merge guest cart after login",
    description=(
        "Moves the guest session's items into the signed-in user's cart. "
        "Items already in the user cart are kept once, never summed."
    ),
)
def merge_cart(
    user: CurrentUser,
    service: CartServiceDep,
    response: Response,
    guest_session_id: GuestSessionId,
    data: CartMergeRequest | None = None,
) -> CartWithSummary:
    """Merge the guest cart into the user's cart.

    The guest session comes from the request body, or else from the
    session header or cookie. The guest cookie is cleared afterwards.
    """
    session_id = (data.session_id if data else None) or guest_session_id
    if not session_id:
        raise ValidationError("No guest session to merge")

    result = service.merge_guest_cart(user_id=user.user_id, session_id=session_id)
    clear_session_cookie(response)
    return result
