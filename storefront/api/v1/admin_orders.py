"""
Administrative order endpoints: listing, fulfillment transitions and
cancellation.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from storefront.api.deps import AdminPrincipal, actor_for, get_order_service
from storefront.api.errors import to_http_exception
from storefront.core.errors import CommerceError
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderStatus
from storefront.schemas.orders import (
    OrderCancelRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
)
from storefront.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.get("", response_model=OrderListResponse, summary="List orders")
async def list_orders(
    admin: AdminPrincipal,
    service: Annotated[OrderService, Depends(get_order_service)],
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    buyer_id: Optional[str] = Query(None, max_length=255),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> OrderListResponse:
    result = await service.list_orders(
        buyer_id=buyer_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return OrderListResponse(**result)


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description="Apply a fulfillment transition allowed by the order state machine",
)
async def update_order_status(
    request: Request,
    order_id: UUID,
    body: OrderStatusUpdate,
    admin: AdminPrincipal,
    service: Annotated[OrderService, Depends(get_order_service)],
) -> OrderResponse:
    logger.info(
        "Order status update requested",
        order_id=str(order_id),
        new_status=body.status.value,
        admin=admin.subject,
    )
    try:
        order = await service.update_status(
            order_id,
            body.status,
            actor=actor_for(request, admin),
            reason=body.reason,
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return OrderResponse(**order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel an order and return its stock to inventory",
)
async def cancel_order(
    request: Request,
    order_id: UUID,
    body: OrderCancelRequest,
    admin: AdminPrincipal,
    service: Annotated[OrderService, Depends(get_order_service)],
) -> OrderResponse:
    try:
        order = await service.cancel_order(
            order_id,
            actor=actor_for(request, admin),
            reason=body.reason,
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return OrderResponse(**order)
