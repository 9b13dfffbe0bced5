"""Admin order management routes."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from marketplace.api.deps import AdminUser, get_order_service
from marketplace.models.order import OrderStatus
from marketplace.schemas.order import OrderDetailResponse, OrderListResponse, RefundResponse
from marketplace.services.order_service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, OrderService

router = APIRouter(prefix="/admin", tags=["admin"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.get(
    "/orders",
    response_model=OrderListResponse,
    summary="List all orders",
    description="Cursor-paginated list of every order with status, date range and text filters.",
)
def list_orders(
    admin: AdminUser,
    service: OrderServiceDep,
    cursor: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
    status: Annotated[OrderStatus | None, Query()] = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
    date_from: Annotated[datetime | None, Query(description="Created at or after")] = None,
    date_to: Annotated[datetime | None, Query(description="Created at or before")] = None,
) -> OrderListResponse:
    return service.list_all_orders(
        cursor=cursor,
        limit=limit,
        status=status,
        search=search,
        date_from=date_from,
        date_to=date_to,
    )


@router.get(
    "/orders/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get any order",
)
def get_order(order_id: UUID, admin: AdminUser, service: OrderServiceDep) -> OrderDetailResponse:
    return service.get_order_admin(order_id)


@router.post(
    "/orders/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund order",
    description=(
        "Refunds a completed order through Stripe, marks it refunded and revokes its download tokens. "
        "409 if the order is not completed, 503 if Stripe is unreachable."
    ),
)
def refund_order(order_id: UUID, admin: AdminUser, service: OrderServiceDep) -> RefundResponse:
    return service.refund_order(order_id)
