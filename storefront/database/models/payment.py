"""
Payment model holding the single payment record of an order.

``order_id`` is unique: the record is created by an atomic
insert-or-update keyed on it, so duplicate confirmations converge on one row.
A completed payment never moves back to another status.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel, JSONType, enum_values


class PaymentStatus(str, Enum):
    """
    Payment status enumeration.

    Attributes:
        PENDING: Gateway order created (or cash on delivery), not yet paid
        COMPLETED: Signature and gateway status verified
        FAILED: Gateway reported the payment as failed
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_successful(self) -> bool:
        return self == PaymentStatus.COMPLETED


class Payment(BaseModel):
    """
    Payment record for an order.

    Attributes:
        order_id: Owning order, unique
        amount: Amount charged, equal to the order total at creation
        currency: ISO 4217 currency code
        gateway: Gateway name (razorpay, stripe, cod)
        gateway_order_id: Gateway order reference
        gateway_payment_id: Gateway payment reference once confirmed
        status: Payment status
        meta: Opaque gateway metadata
    """

    __tablename__ = "payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        comment="Owning order; one payment per order",
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    gateway: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Gateway that processed the payment",
    )

    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        comment="Gateway payment payload and checkout notes",
    )

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        {"comment": "One payment record per order"},
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"status={self.status.value if self.status else None}, "
            f"amount={self.amount}, currency={self.currency})>"
        )
