"""
Order service for queries, fulfillment transitions and cancellation.

This module implements the OrderService. Every status change is planned by
the OrderStateMachine and applied as one conditional UPDATE; inventory is
restored only by the request whose UPDATE actually cancelled the order, so
concurrent cancels (or a cancel racing the expiry loop) restore stock once.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.errors import NotFoundError, StorageError
from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.order import Order, OrderStatus
from storefront.services.audit.sink import SYSTEM_ACTOR, Actor, AuditAction, AuditSink
from storefront.services.inventory.ledger import InventoryLedger, InventoryLedgerError
from storefront.services.notifications.notifier import NotificationType, OrderNotifications
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.orders.state_machine import OrderStateMachine, StateTransitionError
from storefront.services.payments.repository import PaymentRepository

logger = get_logger(__name__)

EXPIRY_REASON = "Payment not completed in time"


def format_order(order: Order) -> dict[str, Any]:
    """Render an order and its line items for API responses."""
    return {
        "id": str(order.id),
        "buyer_id": order.buyer_id,
        "guest_email": order.guest_email,
        "status": order.status.value,
        "payment_method": order.payment_method.value,
        "shipping_method": order.shipping_method.value,
        "currency": order.currency,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "qty": item.qty,
                "unit_price": str(item.unit_price),
                "line_total": str(item.line_total),
            }
            for item in order.items
        ],
        "subtotal": str(order.subtotal),
        "coupon_discount": str(order.coupon_discount),
        "loyalty_discount": str(order.loyalty_discount),
        "tax_amount": str(order.tax_amount),
        "shipping_cost": str(order.shipping_cost),
        "total": str(order.total),
        "coupon_code": order.coupon_code,
        "loyalty_points_redeemed": order.loyalty_points_redeemed,
        "gift_wrap": order.gift_wrap,
        "shipping_address": order.shipping_address,
        "billing_address": order.billing_address,
        "gateway_order_id": order.gateway_order_id,
        "placed_at": order.placed_at.isoformat() if order.placed_at else None,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "cancellation_reason": order.cancellation_reason,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


async def restore_order_inventory(ledger: InventoryLedger, order: Order) -> None:
    """
    Return every line item of ``order`` to stock.

    Callers must only invoke this after winning the conditional transition
    that releases the stock.
    """
    for item in order.items:
        try:
            await ledger.restore(item.product_id, item.qty)
        except InventoryLedgerError as e:
            logger.error(
                "Inventory restore failed, manual correction required",
                order_id=str(order.id),
                product_id=item.product_id,
                qty=item.qty,
                error=str(e),
            )


class OrderService:
    """
    Order service for reads and operator-driven lifecycle changes.

    Attributes:
        session: Async database session
        repository: Order repository
        ledger: Inventory ledger used to restore cancelled stock
        state_machine: Order state machine
    """

    def __init__(
        self,
        session: AsyncSession,
        audit: Optional[AuditSink] = None,
        notifications: Optional[OrderNotifications] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.payments = PaymentRepository(session)
        self.ledger = InventoryLedger(session)
        self.clock = clock or utcnow
        self.state_machine = OrderStateMachine(clock=self.clock)
        self.audit = audit
        self.notifications = notifications
        self.settings = settings or get_settings()

    async def _load(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise NotFoundError(
                "Order not found",
                code="ORDER_NOT_FOUND",
                order_id=str(order_id),
            )
        return order

    async def get_order(
        self,
        order_id: uuid.UUID,
        buyer_id: Optional[str] = None,
        is_admin: bool = False,
    ) -> dict[str, Any]:
        """
        Get order details for its owner or an admin.

        Orders owned by someone else are reported as not found.

        Raises:
            NotFoundError: If the order does not exist or is not visible
        """
        order = await self._load(order_id)
        if not is_admin and not order.belongs_to(buyer_id):
            raise NotFoundError(
                "Order not found",
                code="ORDER_NOT_FOUND",
                order_id=str(order_id),
            )
        return format_order(order)

    async def list_orders(
        self,
        buyer_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """
        List orders with pagination.

        Args:
            buyer_id: Restrict to one buyer (None lists all, for admins)
            status: Optional status filter
            limit: Page size
            offset: Page offset

        Returns:
            Dictionary with orders and pagination info
        """
        orders, total = await self.repository.list_orders(
            buyer_id=buyer_id,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {
            "orders": [format_order(order) for order in orders],
            "total_count": total,
            "limit": limit,
            "offset": offset,
        }

    async def update_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        actor: Actor = SYSTEM_ACTOR,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Apply an operator-requested fulfillment transition.

        Cancellation is delegated to ``cancel_order``. Marking an order paid
        is only possible for cash on delivery and completes its payment.

        Raises:
            NotFoundError: Unknown order
            StateTransitionError: Transition not allowed, or the order changed
                concurrently
        """
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id, actor=actor, reason=reason)

        order = await self._load(order_id)
        previous = order.status
        plan = self.state_machine.plan(order, new_status, reason=reason, manual=True)

        try:
            applied = await self.repository.apply_transition(order.id, plan)
            if applied and new_status == OrderStatus.PAID:
                await self.payments.mark_completed(order.id)
            await self.session.commit()
        except OrderRepositoryError as e:
            raise StorageError(
                "Failed to update order status",
                order_id=str(order_id),
            ) from e

        order = await self._load(order_id)
        if not applied:
            raise StateTransitionError(
                "Order status changed concurrently",
                current_state=order.status,
                target_state=new_status,
                order_id=str(order_id),
            )

        logger.info(
            "Order status updated",
            order_id=str(order_id),
            from_status=previous.value,
            to_status=new_status.value,
        )
        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.ORDER_STATUS,
                "order",
                order.id,
                {"from": previous, "to": new_status, "reason": reason},
            )
        if self.notifications is not None and new_status == OrderStatus.PAID:
            self.notifications.send(
                NotificationType.ORDER_PAID,
                order.owner,
                order_id=str(order.id),
            )
        return format_order(order)

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        actor: Actor = SYSTEM_ACTOR,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Cancel an order and return its stock.

        Raises:
            NotFoundError: Unknown order
            StateTransitionError: Order can no longer be cancelled
        """
        order = await self._load(order_id)
        previous = order.status
        applied = await self._cancel(order, reason)

        order = await self._load(order_id)
        if not applied:
            raise StateTransitionError(
                "Order status changed concurrently",
                current_state=order.status,
                target_state=OrderStatus.CANCELLED,
                order_id=str(order_id),
            )

        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.ORDER_CANCEL,
                "order",
                order.id,
                {"from": previous, "reason": reason},
            )
        if self.notifications is not None:
            self.notifications.send(
                NotificationType.ORDER_CANCELLED,
                order.owner,
                order_id=str(order.id),
                reason=reason,
            )
        return format_order(order)

    async def _cancel(self, order: Order, reason: Optional[str]) -> bool:
        plan = self.state_machine.plan(order, OrderStatus.CANCELLED, reason=reason)
        try:
            applied = await self.repository.apply_transition(order.id, plan)
            await self.session.commit()
        except OrderRepositoryError as e:
            raise StorageError(
                "Failed to cancel order",
                order_id=str(order.id),
            ) from e

        if applied:
            await restore_order_inventory(self.ledger, order)
            logger.info(
                "Order cancelled",
                order_id=str(order.id),
                reason=reason,
                restored_lines=len(order.items),
            )
        return applied

    async def expire_stale_orders(self, limit: int = 100) -> int:
        """
        Cancel pending orders older than the configured TTL.

        Returns:
            Number of orders this call cancelled
        """
        cutoff = self.clock() - timedelta(minutes=self.settings.pending_order_ttl_minutes)
        stale = await self.repository.list_stale_pending(cutoff, limit=limit)

        expired = 0
        for order in stale:
            try:
                if await self._cancel(order, EXPIRY_REASON):
                    expired += 1
                    if self.audit is not None:
                        self.audit.record(
                            SYSTEM_ACTOR,
                            AuditAction.ORDER_CANCEL,
                            "order",
                            order.id,
                            {"reason": EXPIRY_REASON},
                        )
            except StateTransitionError:
                continue

        if expired:
            logger.info("Expired stale pending orders", count=expired, cutoff=cutoff.isoformat())
        return expired
