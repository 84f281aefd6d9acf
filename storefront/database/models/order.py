"""
Order model for the checkout and fulfillment lifecycle.

This module defines the Order aggregate and its line items. Line item prices
are snapshotted at checkout and amounts are stored alongside the derived
total; once an order has been paid, items and amounts can no longer change.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from storefront.database.base import BaseModel, JSONType, enum_values


class OrderStatus(str, Enum):
    """
    Order status enumeration for tracking order lifecycle.

    Attributes:
        PENDING: Order created at checkout, awaiting payment
        PAID: Payment confirmed with the gateway
        PROCESSING: Order being prepared for shipment
        SHIPPED: Handed over to the carrier
        DELIVERED: Delivered to the buyer
        CANCELLED: Cancelled before fulfillment completed
        REFUNDED: Fully refunded
    """

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            ) from None

    @property
    def is_terminal(self) -> bool:
        """Cancelled and refunded orders accept no further transitions."""
        return self in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)

    @property
    def is_locked(self) -> bool:
        """Line items and amounts are immutable in these states."""
        return self in LOCKED_STATUSES


LOCKED_STATUSES = frozenset(
    {
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    }
)


class PaymentMethod(str, Enum):
    """Payment methods offered at checkout."""

    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    COD = "cod"

    @property
    def uses_gateway(self) -> bool:
        return self != PaymentMethod.COD


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"


_AMOUNT_FIELDS = (
    "subtotal",
    "coupon_discount",
    "loyalty_discount",
    "tax_amount",
    "shipping_cost",
    "total",
)


class Order(BaseModel):
    """
    Order aggregate created by checkout.

    Attributes:
        id: Unique order identifier (UUID)
        buyer_id: Registered buyer, mutually exclusive with guest_email
        guest_email: Guest buyer email, mutually exclusive with buyer_id
        status: Current order status
        payment_method: Payment method chosen at checkout
        currency: ISO 4217 currency code
        subtotal: Sum of line item unit price times quantity
        coupon_discount: Discount from the applied coupon
        loyalty_discount: Discount from redeemed loyalty points
        tax_amount: Tax on the taxable amount
        shipping_cost: Shipping charge
        total: subtotal - discounts + tax + shipping
        shipping_address: Shipping address document
        billing_address: Billing address document (defaults to shipping)
        gateway_order_id: External gateway order reference, set at most once
        placed_at: When checkout created the order
        delivered_at: When the order was delivered
    """

    __tablename__ = "orders"

    buyer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Registered buyer identifier",
    )

    guest_email: Mapped[Optional[str]] = mapped_column(
        String(320),
        nullable=True,
        index=True,
        comment="Email of a guest buyer",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        comment="Payment method chosen at checkout",
    )

    shipping_method: Mapped[ShippingMethod] = mapped_column(
        SQLEnum(
            ShippingMethod,
            name="shipping_method",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=ShippingMethod.STANDARD,
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    coupon_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    loyalty_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    tax_rate_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        comment="Tax rate applied at checkout",
    )

    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    loyalty_points_redeemed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    gift_wrap: Mapped[bool] = mapped_column(nullable=False, default=False)

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
    )
    billing_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
    )

    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="External gateway order reference, written once",
    )

    placed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    __table_args__ = (
        Index("ix_orders_status_placed", "status", "placed_at"),
        CheckConstraint(
            "(buyer_id IS NULL) <> (guest_email IS NULL)",
            name="ck_orders_single_owner",
        ),
        CheckConstraint(
            "subtotal >= 0 AND coupon_discount >= 0 AND loyalty_discount >= 0 "
            "AND tax_amount >= 0 AND shipping_cost >= 0 AND total >= 0",
            name="ck_orders_amounts_non_negative",
        ),
        CheckConstraint(
            "total = subtotal - coupon_discount - loyalty_discount "
            "+ tax_amount + shipping_cost",
            name="ck_orders_total_derivation",
        ).ddl_if(dialect="postgresql"),
        {"comment": "Orders created by checkout"},
    )

    @validates(*_AMOUNT_FIELDS)
    def _validate_amount_change(self, key: str, value: Decimal) -> Decimal:
        """Reject amount changes once the order has been paid."""
        current_status = self.__dict__.get("status")
        if current_status is not None and OrderStatus(current_status).is_locked:
            if self.__dict__.get(key) != value:
                raise ValueError(
                    f"Cannot change {key} of an order in status {current_status}"
                )
        return value

    @property
    def owner(self) -> str:
        """Buyer id or guest email, whichever is set."""
        return self.buyer_id or self.guest_email or ""

    def belongs_to(self, buyer_id: Optional[str]) -> bool:
        return buyer_id is not None and self.buyer_id == buyer_id

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status.value if self.status else None}, "
            f"total={self.total}, currency={self.currency})>"
        )


class OrderItem(BaseModel):
    """
    Line item with the unit price snapshotted at checkout.

    Attributes:
        order_id: Owning order
        position: Index of the line in the cart
        product_id: Catalog product identifier
        name: Product name at checkout, for display
        qty: Quantity ordered (positive)
        unit_price: Unit price at purchase
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_order_items_qty_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_price_non_negative"),
    )

    @validates("qty", "unit_price", "product_id")
    def _validate_immutable(self, key: str, value: Any) -> Any:
        order = self.__dict__.get("order")
        if order is not None and order.__dict__.get("status") in LOCKED_STATUSES:
            raise ValueError(f"Cannot change {key} of a line item on a paid order")
        return value

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.qty
