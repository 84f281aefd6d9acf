"""
Order data access repository.

This module implements the OrderRepository, which persists orders with their
line items and applies every state change as a single conditional UPDATE:
the gateway order reference is written only while it is still NULL, and
status transitions only apply while the stored status is in the allowed
source set.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.order import Order, OrderStatus
from storefront.services.orders.state_machine import TransitionPlan

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderRepository:
    """
    Repository for order persistence.

    Attributes:
        session: Async database session
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, order: Order, commit: bool = True) -> Order:
        """
        Persist a new order with its line items.

        Args:
            order: Transient order with items attached
            commit: Commit immediately (default) or leave to the caller

        Returns:
            The persisted order

        Raises:
            OrderRepositoryError: If the insert fails
        """
        try:
            self.session.add(order)
            await self.session.flush()
            if commit:
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to create order",
                owner=order.owner,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise OrderRepositoryError(f"Failed to create order: {e}") from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            total=str(order.total),
            item_count=len(order.items),
        )
        return order

    async def get(self, order_id: uuid.UUID, for_update: bool = False) -> Optional[Order]:
        """
        Load an order with its items.

        Always refreshes from the database so conditional updates issued
        earlier in the same session are visible.

        Args:
            order_id: Order identifier
            for_update: Lock the row until the transaction ends

        Returns:
            Order or None if not found
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_gateway_order(self, gateway_order_id: str) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.gateway_order_id == gateway_order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        buyer_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """
        List orders newest first.

        Args:
            buyer_id: Restrict to one buyer
            status: Restrict to one status
            limit: Page size
            offset: Page offset

        Returns:
            Tuple of (orders, total matching count)
        """
        conditions = []
        if buyer_id is not None:
            conditions.append(Order.buyer_id == buyer_id)
        if status is not None:
            conditions.append(Order.status == status)

        count_stmt = select(func.count()).select_from(Order).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Order)
            .where(*conditions)
            .order_by(Order.placed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_stale_pending(self, placed_before: datetime, limit: int = 100) -> Sequence[Order]:
        """Pending orders placed before the cutoff, oldest first."""
        stmt = (
            select(Order)
            .where(Order.status == OrderStatus.PENDING, Order.placed_at < placed_before)
            .order_by(Order.placed_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def attach_gateway_order(self, order_id: uuid.UUID, gateway_order_id: str) -> str:
        """
        Store the gateway order reference if none is stored yet.

        Args:
            order_id: Order identifier
            gateway_order_id: Reference returned by the gateway

        Returns:
            The reference stored on the order. When another request stored
            one first, that earlier reference is returned instead.
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.gateway_order_id.is_(None))
            .values(gateway_order_id=gateway_order_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                return gateway_order_id

            stored = (
                await self.session.execute(
                    select(Order.gateway_order_id).where(Order.id == order_id)
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise OrderRepositoryError(
                f"Failed to attach gateway order: {e}",
                order_id=str(order_id),
            ) from e

        logger.warning(
            "Gateway order already attached, keeping stored reference",
            order_id=str(order_id),
            stored=stored,
            discarded=gateway_order_id,
        )
        return stored

    async def apply_transition(self, order_id: uuid.UUID, plan: TransitionPlan) -> bool:
        """
        Apply a planned status transition as one conditional UPDATE.

        Args:
            order_id: Order identifier
            plan: Plan produced by the order state machine

        Returns:
            True if this call performed the transition, False if the stored
            status was no longer an allowed source
        """
        return await self.transition(
            order_id,
            plan.target,
            plan.allowed_from,
            **plan.values,
        )

    async def transition(
        self,
        order_id: uuid.UUID,
        target: OrderStatus,
        allowed_from: set[OrderStatus],
        **values: Any,
    ) -> bool:
        """
        Move an order to ``target`` only if its status is in ``allowed_from``.

        The change is flushed but not committed, so callers can commit it
        together with related writes.
        """
        if not allowed_from:
            return False

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status.in_(allowed_from))
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order transition failed",
                order_id=str(order_id),
                target=target.value,
                error=str(e),
            )
            raise OrderRepositoryError(
                f"Failed to transition order: {e}",
                order_id=str(order_id),
            ) from e

        applied = result.rowcount == 1
        logger.info(
            "Order transition applied" if applied else "Order transition skipped",
            order_id=str(order_id),
            target=target.value,
            allowed_from=sorted(s.value for s in allowed_from),
        )
        return applied
