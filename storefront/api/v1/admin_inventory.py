"""Administrative inventory endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from storefront.api.deps import (
    AdminPrincipal,
    Audit,
    actor_for,
    get_inventory_ledger,
)
from storefront.api.errors import to_http_exception
from storefront.core.errors import CommerceError, NotFoundError, StorageError
from storefront.core.logging import get_logger
from storefront.schemas.inventory import (
    InventoryAdjustRequest,
    InventoryResponse,
    InventorySetRequest,
)
from storefront.services.audit.sink import AuditAction
from storefront.services.inventory.ledger import InventoryLedger, InventoryLedgerError

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/inventory", tags=["admin"])

Ledger = Annotated[InventoryLedger, Depends(get_inventory_ledger)]


@router.get("/low-stock", response_model=list[InventoryResponse], summary="Low stock products")
async def low_stock(
    admin: AdminPrincipal,
    ledger: Ledger,
    limit: int = Query(100, ge=1, le=500),
) -> list[InventoryResponse]:
    records = await ledger.low_stock(limit=limit)
    return [InventoryResponse.model_validate(record) for record in records]


@router.get("/{product_id}", response_model=InventoryResponse, summary="Get stock")
async def get_stock(
    product_id: str,
    admin: AdminPrincipal,
    ledger: Ledger,
) -> InventoryResponse:
    record = await ledger.get(product_id)
    if record is None:
        raise to_http_exception(
            NotFoundError(
                "Product has no inventory record",
                code="INVENTORY_NOT_FOUND",
                product_id=product_id,
            )
        )
    return InventoryResponse.model_validate(record)


@router.put("/{product_id}", response_model=InventoryResponse, summary="Set stock")
async def set_stock(
    request: Request,
    product_id: str,
    body: InventorySetRequest,
    admin: AdminPrincipal,
    ledger: Ledger,
    audit: Audit,
) -> InventoryResponse:
    try:
        record = await ledger.set_stock(
            product_id,
            body.qty,
            low_stock_threshold=body.low_stock_threshold,
        )
    except InventoryLedgerError as e:
        raise to_http_exception(
            StorageError("Failed to set inventory", product_id=product_id)
        ) from e
    except CommerceError as e:
        raise to_http_exception(e) from e

    audit.record(
        actor_for(request, admin),
        AuditAction.INVENTORY_SET,
        "inventory",
        product_id,
        {"qty": body.qty, "low_stock_threshold": body.low_stock_threshold},
    )
    return InventoryResponse.model_validate(record)


@router.post(
    "/{product_id}/adjust",
    response_model=InventoryResponse,
    summary="Adjust stock",
)
async def adjust_stock(
    request: Request,
    product_id: str,
    body: InventoryAdjustRequest,
    admin: AdminPrincipal,
    ledger: Ledger,
    audit: Audit,
) -> InventoryResponse:
    try:
        record = await ledger.adjust(product_id, body.delta)
    except InventoryLedgerError as e:
        raise to_http_exception(
            StorageError("Failed to adjust inventory", product_id=product_id)
        ) from e
    except CommerceError as e:
        raise to_http_exception(e) from e

    audit.record(
        actor_for(request, admin),
        AuditAction.INVENTORY_ADJUST,
        "inventory",
        product_id,
        {"delta": body.delta, "reason": body.reason, "qty": record.qty},
    )
    return InventoryResponse.model_validate(record)
