"""
Inventory ledger with atomic reservation and restoration.

This module implements the InventoryLedger, which owns per-product available
quantity. Reservations are a single conditional UPDATE
(``qty = qty - n WHERE qty >= n``) so concurrent checkouts serialize on the
row in the database and can never oversell. Restorations are upserts that
increment unconditionally.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import StateError, ValidationError
from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.inventory import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    InventoryRecord,
)
from storefront.database.upsert import dialect_insert

logger = get_logger(__name__)


class InventoryLedgerError(Exception):
    """Storage failure while reading or mutating inventory."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


@dataclass(frozen=True)
class ReservationResult:
    """
    Outcome of a reservation attempt.

    Attributes:
        ok: True if the quantity was reserved
        product_id: Product the reservation was made for
        requested: Quantity requested
        available_qty: Quantity left after a successful reservation, or the
            quantity currently available when the reservation failed
    """

    ok: bool
    product_id: str
    requested: int
    available_qty: int


class InventoryLedger:
    """
    Per-product stock ledger backed by the ``inventory`` table.

    Every mutating method commits its own statement so that a reservation is
    durable the moment it returns; callers that need to undo it must call
    ``restore``.

    Attributes:
        session: Async database session
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(self, product_id: str, qty: int) -> ReservationResult:
        """
        Atomically decrement stock if enough is available.

        Insufficient stock is an ordinary outcome and is reported through the
        result, not raised.

        Args:
            product_id: Product to reserve
            qty: Quantity to reserve (positive)

        Returns:
            ReservationResult with the remaining or currently available qty

        Raises:
            ValidationError: If qty is not positive
            InventoryLedgerError: On storage failure
        """
        if qty <= 0:
            raise ValidationError(
                "Reservation quantity must be positive",
                code="INVALID_QUANTITY",
                product_id=product_id,
                qty=qty,
            )

        stmt = (
            update(InventoryRecord)
            .where(
                InventoryRecord.product_id == product_id,
                InventoryRecord.qty >= qty,
            )
            .values(qty=InventoryRecord.qty - qty, updated_at=utcnow())
            .returning(InventoryRecord.qty)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            remaining = result.scalar_one_or_none()
            available = remaining
            if remaining is None:
                available = await self._current_qty(product_id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Inventory reservation failed",
                product_id=product_id,
                qty=qty,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise InventoryLedgerError(
                f"Failed to reserve inventory: {e}",
                product_id=product_id,
            ) from e

        if remaining is None:
            logger.info(
                "Inventory reservation rejected",
                product_id=product_id,
                requested=qty,
                available=available,
            )
            return ReservationResult(
                ok=False,
                product_id=product_id,
                requested=qty,
                available_qty=available or 0,
            )

        logger.debug(
            "Inventory reserved",
            product_id=product_id,
            qty=qty,
            remaining=remaining,
        )
        return ReservationResult(
            ok=True,
            product_id=product_id,
            requested=qty,
            available_qty=remaining,
        )

    async def restore(self, product_id: str, qty: int) -> int:
        """
        Unconditionally return stock to a product.

        Creates the inventory record if it does not exist. Callers are
        responsible for not restoring the same units twice.

        Args:
            product_id: Product to restore
            qty: Quantity to add back (positive)

        Returns:
            Quantity available after the restore
        """
        if qty <= 0:
            raise ValidationError(
                "Restore quantity must be positive",
                code="INVALID_QUANTITY",
                product_id=product_id,
                qty=qty,
            )

        table = InventoryRecord.__table__
        stmt = dialect_insert(self.session, InventoryRecord).values(
            product_id=product_id,
            qty=qty,
            low_stock_threshold=DEFAULT_LOW_STOCK_THRESHOLD,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.product_id],
            set_={"qty": table.c.qty + qty, "updated_at": utcnow()},
        ).returning(table.c.qty)

        try:
            result = await self.session.execute(stmt)
            new_qty = result.scalar_one()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Inventory restore failed",
                product_id=product_id,
                qty=qty,
                error=str(e),
            )
            raise InventoryLedgerError(
                f"Failed to restore inventory: {e}",
                product_id=product_id,
            ) from e

        logger.info("Inventory restored", product_id=product_id, qty=qty, available=new_qty)
        return new_qty

    async def set_stock(
        self,
        product_id: str,
        qty: int,
        low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    ) -> InventoryRecord:
        """
        Set the absolute stock level for a product, creating it if needed.

        Raises:
            ValidationError: If qty or threshold is negative
        """
        if qty < 0 or low_stock_threshold < 0:
            raise ValidationError(
                "Stock and threshold must not be negative",
                code="INVALID_QUANTITY",
                product_id=product_id,
                qty=qty,
                low_stock_threshold=low_stock_threshold,
            )

        table = InventoryRecord.__table__
        stmt = dialect_insert(self.session, InventoryRecord).values(
            product_id=product_id,
            qty=qty,
            low_stock_threshold=low_stock_threshold,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.product_id],
            set_={
                "qty": qty,
                "low_stock_threshold": low_stock_threshold,
                "updated_at": utcnow(),
            },
        )

        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise InventoryLedgerError(
                f"Failed to set inventory: {e}",
                product_id=product_id,
            ) from e

        logger.info(
            "Inventory set",
            product_id=product_id,
            qty=qty,
            low_stock_threshold=low_stock_threshold,
        )
        return await self.get(product_id)

    async def adjust(self, product_id: str, delta: int) -> InventoryRecord:
        """
        Apply a relative stock correction.

        Positive deltas behave like ``restore``; negative deltas are applied
        only if enough stock remains.

        Raises:
            ValidationError: If delta is zero
            StateError: If a negative delta would take stock below zero
        """
        if delta == 0:
            raise ValidationError(
                "Adjustment must be non-zero",
                code="INVALID_QUANTITY",
                product_id=product_id,
            )

        if delta > 0:
            await self.restore(product_id, delta)
            return await self.get(product_id)

        result = await self.reserve(product_id, -delta)
        if not result.ok:
            raise StateError(
                f"Cannot remove {-delta} units from product {product_id}",
                code="INSUFFICIENT_INVENTORY",
                product_id=product_id,
                available=result.available_qty,
            )
        return await self.get(product_id)

    async def get(self, product_id: str) -> Optional[InventoryRecord]:
        """Load the inventory record for a product, bypassing stale identity map entries."""
        stmt = (
            select(InventoryRecord)
            .where(InventoryRecord.product_id == product_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def low_stock(self, limit: int = 100) -> list[InventoryRecord]:
        """
        List products whose stock is at or below their threshold.

        Args:
            limit: Maximum number of records

        Returns:
            Records ordered by ascending quantity
        """
        stmt = (
            select(InventoryRecord)
            .where(InventoryRecord.qty <= InventoryRecord.low_stock_threshold)
            .order_by(InventoryRecord.qty.asc(), InventoryRecord.product_id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _current_qty(self, product_id: str) -> int:
        stmt = select(InventoryRecord.qty).where(InventoryRecord.product_id == product_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0
