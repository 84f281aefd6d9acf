"""
Administrative refund endpoints.

Refunds are created against the order's completed payment and settled in
the background; failed settlements can be re-queued or resolved manually.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from storefront.api.deps import AdminPrincipal, actor_for, get_refund_manager
from storefront.api.errors import to_http_exception
from storefront.core.errors import CommerceError, ConflictError
from storefront.core.logging import get_logger
from storefront.database.models.refund import Refund, RefundStatus
from storefront.schemas.refunds import (
    RefundConfirmRequest,
    RefundCreateRequest,
    RefundListResponse,
    RefundResponse,
)
from storefront.services.refunds.service import RefundManager, format_refund

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/refunds", tags=["admin"])


@router.post(
    "",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create refund",
)
async def create_refund(
    request: Request,
    body: RefundCreateRequest,
    admin: AdminPrincipal,
    manager: Annotated[RefundManager, Depends(get_refund_manager)],
) -> RefundResponse:
    """
    Create a refund for an order.

    Raises:
        HTTPException: 409 with code REFUND_WINDOW_EXPIRED,
            PAYMENT_NOT_COMPLETED, REFUND_AMOUNT_EXCEEDED or DUPLICATE_REFUND;
            a duplicate carries the existing refund under ``existing``
    """
    try:
        refund = await manager.create_refund(
            body.order_id,
            reason=body.reason,
            amount=body.amount,
            actor=actor_for(request, admin),
        )
    except ConflictError as e:
        if isinstance(e.existing, Refund):
            raise to_http_exception(e, existing=format_refund(e.existing)) from e
        raise to_http_exception(e) from e
    except CommerceError as e:
        raise to_http_exception(e) from e

    return RefundResponse(**format_refund(refund))


@router.get("", response_model=RefundListResponse, summary="List refunds")
async def list_refunds(
    admin: AdminPrincipal,
    manager: Annotated[RefundManager, Depends(get_refund_manager)],
    order_id: Optional[UUID] = Query(None),
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> RefundListResponse:
    refunds = await manager.list_refunds(
        order_id=order_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return RefundListResponse(
        refunds=[RefundResponse(**format_refund(refund)) for refund in refunds],
        limit=limit,
        offset=offset,
    )


@router.post(
    "/{refund_id}/settle",
    response_model=RefundResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry refund settlement",
)
async def retry_settlement(
    request: Request,
    refund_id: UUID,
    admin: AdminPrincipal,
    manager: Annotated[RefundManager, Depends(get_refund_manager)],
) -> RefundResponse:
    """
    Re-queue settlement of a requested or failed refund.

    Raises:
        HTTPException: 409 with code INVALID_STATE, REFUND_AMOUNT_EXCEEDED or
            DUPLICATE_REFUND; a duplicate carries the active refund under
            ``existing``
    """
    try:
        refund = await manager.retry_settlement(refund_id, actor=actor_for(request, admin))
    except ConflictError as e:
        if isinstance(e.existing, Refund):
            raise to_http_exception(e, existing=format_refund(e.existing)) from e
        raise to_http_exception(e) from e
    except CommerceError as e:
        raise to_http_exception(e) from e

    return RefundResponse(**format_refund(refund))


@router.post(
    "/{refund_id}/confirm",
    response_model=RefundResponse,
    summary="Record manual refund outcome",
)
async def confirm_refund(
    request: Request,
    refund_id: UUID,
    body: RefundConfirmRequest,
    admin: AdminPrincipal,
    manager: Annotated[RefundManager, Depends(get_refund_manager)],
) -> RefundResponse:
    try:
        refund = await manager.confirm_manually(
            refund_id,
            RefundStatus(body.outcome),
            actor=actor_for(request, admin),
            gateway_refund_id=body.gateway_refund_id,
            note=body.note,
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return RefundResponse(**format_refund(refund))
