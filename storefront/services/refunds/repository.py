"""
Refund data access repository.

New refunds are inserted with ``ON CONFLICT DO NOTHING`` against the partial
unique index on ``(payment_id, amount)`` over non-failed refunds, so two
concurrent identical requests cannot both create a row. Status changes are
conditional UPDATEs guarded by the allowed source statuses. None of the
methods commit.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.refund import ACTIVE_REFUND_CLAUSE, Refund, RefundStatus
from storefront.database.upsert import dialect_insert
from storefront.services.orders.pricing import ZERO

logger = get_logger(__name__)


class RefundRepositoryError(Exception):
    """Base exception for refund repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class RefundConflictError(RefundRepositoryError):
    """A status change collided with the active refund unique index."""


class RefundRepository:
    """
    Repository for refunds.

    Attributes:
        session: Async database session
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_if_absent(
        self,
        payment_id: uuid.UUID,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        initiated_by: str,
        reason: str,
    ) -> Optional[Refund]:
        """
        Insert a requested refund unless an active one exists at this amount.

        Returns:
            The new refund, or None if a non-failed refund for the same
            payment and amount already exists
        """
        table = Refund.__table__
        now = utcnow()
        stmt = (
            dialect_insert(self.session, table)
            .values(
                id=uuid.uuid4(),
                payment_id=payment_id,
                order_id=order_id,
                amount=amount,
                currency=currency,
                initiated_by=initiated_by,
                status=RefundStatus.REQUESTED,
                reason=reason,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[table.c.payment_id, table.c.amount],
                index_where=ACTIVE_REFUND_CLAUSE,
            )
            .returning(table.c.id)
        )

        try:
            result = await self.session.execute(stmt)
            refund_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to insert refund",
                payment_id=str(payment_id),
                amount=str(amount),
                error=str(e),
            )
            raise RefundRepositoryError(
                f"Failed to insert refund: {e}",
                payment_id=str(payment_id),
            ) from e

        if refund_id is None:
            return None
        return await self.get(refund_id)

    async def get(self, refund_id: uuid.UUID) -> Optional[Refund]:
        stmt = (
            select(Refund)
            .where(Refund.id == refund_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active(self, payment_id: uuid.UUID, amount: Decimal) -> Optional[Refund]:
        """Non-failed refund for the payment at exactly ``amount``."""
        stmt = select(Refund).where(
            Refund.payment_id == payment_id,
            Refund.amount == amount,
            Refund.status != RefundStatus.FAILED,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def sum_amounts(
        self,
        payment_id: uuid.UUID,
        statuses: Optional[set[RefundStatus]] = None,
    ) -> Decimal:
        """
        Sum refund amounts for a payment.

        Args:
            payment_id: Payment refunded
            statuses: Statuses to include; defaults to every non-failed status
        """
        stmt = select(func.coalesce(func.sum(Refund.amount), ZERO)).where(
            Refund.payment_id == payment_id
        )
        if statuses is None:
            stmt = stmt.where(Refund.status != RefundStatus.FAILED)
        else:
            stmt = stmt.where(Refund.status.in_(statuses))

        result = await self.session.execute(stmt)
        return Decimal(result.scalar_one())

    async def list_refunds(
        self,
        order_id: Optional[uuid.UUID] = None,
        status: Optional[RefundStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Refund]:
        conditions = []
        if order_id is not None:
            conditions.append(Refund.order_id == order_id)
        if status is not None:
            conditions.append(Refund.status == status)

        stmt = (
            select(Refund)
            .where(*conditions)
            .order_by(Refund.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        refund_id: uuid.UUID,
        target: RefundStatus,
        allowed_from: set[RefundStatus],
        updated_before: Optional[datetime] = None,
        **values: Any,
    ) -> bool:
        """
        Move a refund to ``target`` only if its status is in ``allowed_from``.

        Moving to processing also counts a settlement attempt.

        Args:
            updated_before: Only match refunds last touched before this time

        Returns:
            True if this call performed the transition

        Raises:
            RefundConflictError: Reviving a failed refund collided with an
                active refund for the same payment and amount
        """
        if not allowed_from:
            return False

        if target == RefundStatus.PROCESSING:
            values.setdefault("attempts", Refund.attempts + 1)

        conditions = [Refund.id == refund_id, Refund.status.in_(allowed_from)]
        if updated_before is not None:
            conditions.append(Refund.updated_at < updated_before)

        stmt = (
            update(Refund)
            .where(*conditions)
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            await self.session.rollback()
            raise RefundConflictError(
                f"Refund collides with an active refund: {e}",
                refund_id=str(refund_id),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RefundRepositoryError(
                f"Failed to transition refund: {e}",
                refund_id=str(refund_id),
            ) from e

        applied = result.rowcount == 1
        logger.debug(
            "Refund transition applied" if applied else "Refund transition skipped",
            refund_id=str(refund_id),
            target=target.value,
        )
        return applied
