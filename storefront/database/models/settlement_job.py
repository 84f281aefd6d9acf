"""
Settlement job queue for asynchronous refund settlement.

Jobs are claimed with a conditional UPDATE on ``status`` so that concurrent
workers never run the same job twice at the same time. Delivery is
at-least-once; the refund id doubles as the gateway idempotency key.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel, enum_values, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


REFUND_SETTLE = "refund.settle"

OPEN_JOB_CLAUSE = text("status IN ('pending', 'processing')")


class SettlementJob(BaseModel):
    """
    Queued refund settlement.

    Attributes:
        kind: Job type, currently always ``refund.settle``
        refund_id: Refund to settle
        status: Job status
        attempts: Attempts made so far
        max_attempts: Attempts allowed before the job is failed for good
        next_run_at: Earliest time the job may run again
        last_error: Error from the most recent failed attempt
    """

    __tablename__ = "settlement_jobs"

    kind: Mapped[str] = mapped_column(String(64), nullable=False, default=REFUND_SETTLE)

    refund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("refunds.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(
            JobStatus,
            name="settlement_job_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_settlement_jobs_due", "status", "next_run_at"),
        Index(
            "uq_settlement_jobs_open_refund",
            "refund_id",
            unique=True,
            postgresql_where=OPEN_JOB_CLAUSE,
            sqlite_where=OPEN_JOB_CLAUSE,
        ),
        {"comment": "Refund settlement work queue"},
    )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts
