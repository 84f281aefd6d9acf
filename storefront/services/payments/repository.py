"""
Payment repository for the one-payment-per-order record.

Payment rows are only ever written through single-statement upserts keyed on
``order_id``, so concurrent checkouts and duplicate confirmations converge on
one row. None of the methods commit; the payment service commits payment and
order changes together.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.database.upsert import dialect_insert, lock_rows

logger = get_logger(__name__)


class PaymentRepositoryError(Exception):
    """Base exception for payment repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PaymentRepository:
    """
    Repository for payment records.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_pending(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        gateway: str,
        gateway_order_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """
        Record a pending payment for an order unless one exists.

        Args:
            order_id: Owning order
            amount: Order total at creation
            currency: ISO currency code
            gateway: Gateway name
            gateway_order_id: Gateway order reference, if any
            meta: Opaque metadata

        Returns:
            The payment stored for the order, new or existing
        """
        table = Payment.__table__
        now = utcnow()
        stmt = (
            dialect_insert(self.session, table)
            .values(
                id=uuid.uuid4(),
                order_id=order_id,
                amount=amount,
                currency=currency,
                gateway=gateway,
                gateway_order_id=gateway_order_id,
                status=PaymentStatus.PENDING,
                metadata=meta,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[table.c.order_id])
        )

        try:
            await self.session.execute(stmt)
            payment = await self.get_by_order(order_id)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to record pending payment",
                order_id=str(order_id),
                error=str(e),
            )
            raise PaymentRepositoryError(
                f"Failed to record pending payment: {e}",
                order_id=str(order_id),
            ) from e

        logger.debug(
            "Pending payment recorded",
            order_id=str(order_id),
            payment_id=str(payment.id),
            gateway=gateway,
        )
        return payment

    async def upsert_completed(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        gateway: str,
        gateway_order_id: Optional[str],
        gateway_payment_id: str,
        meta: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Insert or update the order's payment as completed in one statement.

        A payment already completed is left untouched.

        Returns:
            True if this call moved the payment to completed, False if it
            was already completed
        """
        table = Payment.__table__
        now = utcnow()
        stmt = dialect_insert(self.session, table).values(
            id=uuid.uuid4(),
            order_id=order_id,
            amount=amount,
            currency=currency,
            gateway=gateway,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            status=PaymentStatus.COMPLETED,
            metadata=meta,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.order_id],
            set_={
                "status": PaymentStatus.COMPLETED,
                "gateway_order_id": gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "metadata": meta,
                "updated_at": now,
            },
            where=table.c.status != PaymentStatus.COMPLETED,
        ).returning(table.c.id)

        try:
            result = await self.session.execute(stmt)
            payment_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to record completed payment",
                order_id=str(order_id),
                error=str(e),
            )
            raise PaymentRepositoryError(
                f"Failed to record completed payment: {e}",
                order_id=str(order_id),
            ) from e

        return payment_id is not None

    async def mark_completed(
        self,
        order_id: uuid.UUID,
        gateway_payment_id: Optional[str] = None,
    ) -> bool:
        """Complete a pending payment in place (cash collected on delivery)."""
        stmt = (
            update(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status == PaymentStatus.PENDING,
            )
            .values(
                status=PaymentStatus.COMPLETED,
                gateway_payment_id=gateway_payment_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get(self, payment_id: uuid.UUID, for_update: bool = False) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            await lock_rows(self.session, Payment, Payment.id == payment_id)
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_order(
        self,
        order_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """
        Load the payment for an order.

        Args:
            order_id: Owning order
            for_update: Lock the payment row until the transaction ends

        Returns:
            Payment or None if the order has none yet
        """
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            await lock_rows(self.session, Payment, Payment.order_id == order_id)
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_gateway_payment(self, gateway_payment_id: str) -> Optional[Payment]:
        """Completed payment recorded for a gateway payment reference, if any."""
        stmt = (
            select(Payment)
            .where(
                Payment.gateway_payment_id == gateway_payment_id,
                Payment.status == PaymentStatus.COMPLETED,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
