"""Inventory administration schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront.database.models.inventory import DEFAULT_LOW_STOCK_THRESHOLD


class InventorySetRequest(BaseModel):
    qty: int = Field(..., ge=0, description="Absolute units available")
    low_stock_threshold: int = Field(
        default=DEFAULT_LOW_STOCK_THRESHOLD,
        ge=0,
        description="Quantity at or below which the product is reported as low",
    )


class InventoryAdjustRequest(BaseModel):
    delta: int = Field(..., description="Units to add (positive) or remove (negative)")
    reason: Optional[str] = Field(None, max_length=500)


class InventoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    qty: int
    low_stock_threshold: int
    is_low_stock: bool
    updated_at: Optional[datetime] = None
