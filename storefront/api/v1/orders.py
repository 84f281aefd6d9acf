"""
Buyer order endpoints.

Buyers see only their own orders; admins may read any order by id.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from storefront.api.deps import CurrentPrincipal, get_order_service
from storefront.api.errors import to_http_exception
from storefront.core.errors import CommerceError
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderStatus
from storefront.schemas.orders import OrderListResponse, OrderResponse
from storefront.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_orders(
    principal: CurrentPrincipal,
    service: Annotated[OrderService, Depends(get_order_service)],
    status_filter: Optional[OrderStatus] = Query(None, alias="status", description="Filter by order status"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of records to return"),
    offset: int = Query(0, ge=0, description="Number of records to skip"),
) -> OrderListResponse:
    result = await service.list_orders(
        buyer_id=principal.subject,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    logger.info(
        "Orders retrieved",
        buyer_id=principal.subject,
        count=len(result["orders"]),
        total_count=result["total_count"],
    )
    return OrderListResponse(**result)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    service: Annotated[OrderService, Depends(get_order_service)],
) -> OrderResponse:
    """
    Get an order owned by the caller.

    Orders owned by someone else are reported as 404 for non-admins.
    """
    try:
        order = await service.get_order(
            order_id,
            buyer_id=principal.subject,
            is_admin=principal.is_admin,
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return OrderResponse(**order)
