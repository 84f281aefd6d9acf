"""Order query and fulfillment schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from storefront.database.models.order import OrderStatus


class OrderItemResponse(BaseModel):
    product_id: str
    name: Optional[str] = None
    qty: int
    unit_price: Decimal
    line_total: Decimal


class OrderResponse(BaseModel):
    """Order with its line items and totals."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: Optional[str] = None
    guest_email: Optional[str] = None
    status: OrderStatus
    payment_method: str
    shipping_method: str
    currency: str
    items: list[OrderItemResponse]
    subtotal: Decimal
    coupon_discount: Decimal
    loyalty_discount: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal
    coupon_code: Optional[str] = None
    loyalty_points_redeemed: int = 0
    gift_wrap: bool = False
    shipping_address: dict[str, Any]
    billing_address: dict[str, Any]
    gateway_order_id: Optional[str] = None
    placed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total_count: int
    limit: int
    offset: int


class OrderStatusUpdate(BaseModel):
    """Fulfillment transition requested by an operator."""

    status: OrderStatus = Field(..., description="Target status")
    reason: Optional[str] = Field(None, max_length=500, description="Reason for the change")


class OrderCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Cancellation reason")
