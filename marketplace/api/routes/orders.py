"""Buyer order history routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from marketplace.api.deps import CurrentUser, get_order_service
from marketplace.models.order import OrderStatus
from marketplace.schemas.order import OrderDetailResponse, OrderListResponse
from marketplace.services.order_service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, OrderService

router = APIRouter(prefix="/orders", tags=["orders"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Cursor-paginated list of the caller's orders, newest first.",
)
def list_orders(
    user: CurrentUser,
    service: OrderServiceDep,
    cursor: Annotated[str | None, Query(description="Cursor from a previous page")] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
    status: Annotated[OrderStatus | None, Query(description="Filter by status")] = None,
    search: Annotated[str | None, Query(max_length=100, description="Order number or email")] = None,
) -> OrderListResponse:
    return service.list_user_orders(user.user_id, cursor=cursor, limit=limit, status=status, search=search)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get order",
    description="One of the caller's orders with items and download tokens.",
)
def get_order(order_id: UUID, user: CurrentUser, service: OrderServiceDep) -> OrderDetailResponse:
    return service.get_order(user.user_id, order_id)
