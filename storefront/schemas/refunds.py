"""Refund administration schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from storefront.database.models.refund import RefundStatus


class RefundCreateRequest(BaseModel):
    """
    Refund request.

    Omitting ``amount`` refunds the full payment amount.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    order_id: UUID = Field(..., description="Order to refund")
    amount: Optional[Decimal] = Field(
        None,
        gt=0,
        decimal_places=2,
        description="Amount to refund",
    )
    reason: str = Field(..., min_length=1, max_length=500, description="Why the refund is issued")


class RefundConfirmRequest(BaseModel):
    """Outcome of a refund settled outside the gateway integration."""

    model_config = ConfigDict(str_strip_whitespace=True)

    outcome: Literal["succeeded", "failed"] = Field(..., description="Settlement outcome")
    gateway_refund_id: Optional[str] = Field(None, max_length=255)
    note: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseModel):
    id: UUID
    payment_id: UUID
    order_id: UUID
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: str
    initiated_by: str
    gateway_refund_id: Optional[str] = None
    attempts: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RefundListResponse(BaseModel):
    refunds: list[RefundResponse]
    limit: int
    offset: int
