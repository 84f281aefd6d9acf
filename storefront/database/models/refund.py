"""
Refund model for recorded refund intents and their settlement.

A partial unique index on ``(payment_id, amount)`` over non-failed refunds
makes duplicate refund requests collide in storage rather than relying on
an application-level existence check.
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel, JSONType, enum_values


class RefundStatus(str, Enum):
    """
    Refund lifecycle: requested -> processing -> succeeded | failed.

    Failed refunds can be moved back to processing by re-running settlement.
    """

    REQUESTED = "requested"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_settleable(self) -> bool:
        return self in (RefundStatus.REQUESTED, RefundStatus.FAILED)


ACTIVE_REFUND_CLAUSE = text("status <> 'failed'")


class Refund(BaseModel):
    """
    Refund recorded against a completed payment.

    Attributes:
        payment_id: Payment being refunded
        order_id: Owning order
        amount: Refund amount (positive)
        currency: ISO 4217 currency code
        initiated_by: Admin who requested the refund
        status: Refund status
        reason: Why the refund was issued
        gateway_refund_id: Gateway reference once settled
        gateway_response: Last gateway payload or error
        attempts: Settlement attempts made so far
    """

    __tablename__ = "refunds"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(
            RefundStatus,
            name="refund_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=RefundStatus.REQUESTED,
        index=True,
    )

    reason: Mapped[str] = mapped_column(String(500), nullable=False)

    gateway_refund_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    gateway_response: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    attempts: Mapped[int] = mapped_column(nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_refunds_payment_amount_active",
            "payment_id",
            "amount",
            unique=True,
            postgresql_where=ACTIVE_REFUND_CLAUSE,
            sqlite_where=ACTIVE_REFUND_CLAUSE,
        ),
        CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
        {"comment": "Refunds against completed payments"},
    )

    def __repr__(self) -> str:
        return (
            f"<Refund(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status={self.status.value if self.status else None})>"
        )
