"""
Tests for the order service: reads, operator transitions, cancellation and
expiry of unpaid orders.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from helpers import create_order, days_ago, load_order, mark_paid, move_order, set_stock, stock_of
from storefront.core.errors import NotFoundError
from storefront.database.models import AuditLogEntry, OrderStatus, PaymentMethod, PaymentStatus
from storefront.services.audit.sink import Actor, ActorType, AuditSink
from storefront.services.notifications.notifier import NotificationType
from storefront.services.orders.service import EXPIRY_REASON, OrderService
from storefront.services.orders.state_machine import StateTransitionError
from storefront.services.payments.repository import PaymentRepository

ADMIN = Actor(actor_id="admin-1", actor_type=ActorType.ADMIN)


@pytest.fixture
def audit(session_factory, dispatcher) -> AuditSink:
    return AuditSink(session_factory=session_factory, dispatcher=dispatcher)


@pytest.fixture
def order_service(db_session, settings, audit, notifications) -> OrderService:
    return OrderService(db_session, audit=audit, notifications=notifications, settings=settings)


# ============================================================================
# Query Tests
# ============================================================================


class TestOrderQueries:
    """Tests for get_order and list_orders."""

    async def test_owner_can_read_order(self, order_service, session_factory):
        order_id = await create_order(session_factory, buyer_id="buyer-1")

        order = await order_service.get_order(order_id, buyer_id="buyer-1")

        assert order["id"] == str(order_id)
        assert order["total"] == "1180.00"
        assert order["items"][0]["line_total"] == "1000.00"

    async def test_other_buyer_sees_not_found(self, order_service, session_factory):
        order_id = await create_order(session_factory, buyer_id="buyer-1")

        with pytest.raises(NotFoundError) as exc_info:
            await order_service.get_order(order_id, buyer_id="buyer-2")

        assert exc_info.value.code == "ORDER_NOT_FOUND"

    async def test_admin_can_read_any_order(self, order_service, session_factory):
        order_id = await create_order(session_factory, buyer_id="buyer-1")

        order = await order_service.get_order(order_id, is_admin=True)

        assert order["buyer_id"] == "buyer-1"

    async def test_unknown_order(self, order_service):
        with pytest.raises(NotFoundError):
            await order_service.get_order(uuid.uuid4(), is_admin=True)

    async def test_list_orders_filters_by_buyer_and_status(self, order_service, session_factory):
        first = await create_order(session_factory, buyer_id="buyer-1")
        await create_order(session_factory, buyer_id="buyer-1")
        await create_order(session_factory, buyer_id="buyer-2")
        await move_order(session_factory, first, OrderStatus.CANCELLED)

        mine = await order_service.list_orders(buyer_id="buyer-1")
        cancelled = await order_service.list_orders(
            buyer_id="buyer-1", status=OrderStatus.CANCELLED
        )

        assert mine["total_count"] == 2
        assert cancelled["total_count"] == 1
        assert cancelled["orders"][0]["id"] == str(first)

    async def test_list_orders_paginates(self, order_service, session_factory):
        for _ in range(3):
            await create_order(session_factory)

        page = await order_service.list_orders(limit=2, offset=2)

        assert page["total_count"] == 3
        assert len(page["orders"]) == 1
        assert page["offset"] == 2


# ============================================================================
# Status Update Tests
# ============================================================================


class TestUpdateStatus:
    """Tests for operator-driven transitions."""

    async def test_fulfillment_flow_to_delivered(self, order_service, session_factory):
        order_id = await create_order(session_factory, gateway_order_id="order_x")
        await mark_paid(session_factory, order_id)

        for target in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            result = await order_service.update_status(order_id, target, actor=ADMIN)
            assert result["status"] == target.value

        assert result["delivered_at"] is not None

    async def test_skipping_states_rejected(self, order_service, session_factory):
        order_id = await create_order(session_factory)

        with pytest.raises(StateTransitionError):
            await order_service.update_status(order_id, OrderStatus.SHIPPED, actor=ADMIN)

        assert (await load_order(session_factory, order_id)).status == OrderStatus.PENDING

    async def test_gateway_order_cannot_be_marked_paid_manually(
        self, order_service, session_factory
    ):
        order_id = await create_order(session_factory, gateway_order_id="order_x")

        with pytest.raises(StateTransitionError):
            await order_service.update_status(order_id, OrderStatus.PAID, actor=ADMIN)

    async def test_cash_on_delivery_marked_paid_completes_payment(
        self, order_service, session_factory, dispatcher, recording_notifier
    ):
        order_id = await create_order(session_factory, payment_method=PaymentMethod.COD)
        async with session_factory() as session:
            await PaymentRepository(session).create_pending(
                order_id=order_id, amount=Decimal("1180.00"), currency="INR", gateway="cod"
            )
            await session.commit()

        result = await order_service.update_status(order_id, OrderStatus.PAID, actor=ADMIN)

        assert result["status"] == "paid"
        async with session_factory() as session:
            payment = await PaymentRepository(session).get_by_order(order_id)
        assert payment.status == PaymentStatus.COMPLETED

        await dispatcher.drain()
        assert NotificationType.ORDER_PAID in recording_notifier.types()

    async def test_status_update_is_audited(self, order_service, session_factory, dispatcher):
        order_id = await create_order(session_factory)

        await order_service.update_status(
            order_id, OrderStatus.CANCELLED, actor=ADMIN, reason="fraud check"
        )
        await dispatcher.drain()

        async with session_factory() as session:
            entries = (await session.execute(select(AuditLogEntry))).scalars().all()
        assert [entry.action for entry in entries] == ["order.cancel"]
        assert entries[0].actor_id == "admin-1"
        assert entries[0].meta["reason"] == "fraud check"


# ============================================================================
# Cancellation and Expiry Tests
# ============================================================================


class TestCancellation:
    """Tests for cancel_order and expire_stale_orders."""

    async def test_cancel_restores_inventory(self, order_service, session_factory):
        await set_stock(session_factory, P1=3)
        order_id = await create_order(session_factory, items=[("P1", 2, Decimal("500.00"))])

        result = await order_service.cancel_order(order_id, actor=ADMIN, reason="requested")

        assert result["status"] == "cancelled"
        assert result["cancellation_reason"] == "requested"
        assert await stock_of(session_factory, "P1") == 5

    async def test_second_cancel_rejected_and_stock_restored_once(
        self, order_service, session_factory
    ):
        await set_stock(session_factory, P1=0)
        order_id = await create_order(session_factory, items=[("P1", 2, Decimal("500.00"))])

        await order_service.cancel_order(order_id, actor=ADMIN)
        with pytest.raises(StateTransitionError):
            await order_service.cancel_order(order_id, actor=ADMIN)

        assert await stock_of(session_factory, "P1") == 2

    async def test_concurrent_cancels_restore_once(self, session_factory, settings):
        await set_stock(session_factory, P1=0)
        order_id = await create_order(session_factory, items=[("P1", 1, Decimal("500.00"))])

        async def cancel():
            async with session_factory() as session:
                try:
                    await OrderService(session, settings=settings).cancel_order(order_id)
                    return True
                except StateTransitionError:
                    return False

        outcomes = await asyncio.gather(cancel(), cancel(), cancel())

        assert outcomes.count(True) == 1
        assert await stock_of(session_factory, "P1") == 1

    async def test_shipped_order_cannot_be_cancelled(self, order_service, session_factory):
        order_id = await create_order(session_factory, gateway_order_id="order_x")
        await mark_paid(session_factory, order_id)
        await move_order(session_factory, order_id, OrderStatus.SHIPPED)

        with pytest.raises(StateTransitionError):
            await order_service.cancel_order(order_id, actor=ADMIN)

    async def test_cancel_notifies_owner(
        self, order_service, session_factory, dispatcher, recording_notifier
    ):
        order_id = await create_order(session_factory, buyer_id=None, guest_email="g@example.com")

        await order_service.cancel_order(order_id, actor=ADMIN)
        await dispatcher.drain()

        notification_type, recipient, _ = recording_notifier.sent[-1]
        assert notification_type == NotificationType.ORDER_CANCELLED
        assert recipient == "g@example.com"

    async def test_expire_stale_orders(self, order_service, session_factory):
        await set_stock(session_factory, P1=0)
        stale = await create_order(
            session_factory, items=[("P1", 1, Decimal("500.00"))], placed_at=days_ago(1)
        )
        fresh = await create_order(session_factory, items=[("P1", 1, Decimal("500.00"))])

        expired = await order_service.expire_stale_orders()

        assert expired == 1
        stale_order = await load_order(session_factory, stale)
        assert stale_order.status == OrderStatus.CANCELLED
        assert stale_order.cancellation_reason == EXPIRY_REASON
        assert (await load_order(session_factory, fresh)).status == OrderStatus.PENDING
        assert await stock_of(session_factory, "P1") == 1

    async def test_expiry_skips_paid_orders(self, order_service, session_factory):
        order_id = await create_order(
            session_factory, placed_at=days_ago(1), gateway_order_id="order_x"
        )
        await mark_paid(session_factory, order_id)

        assert await order_service.expire_stale_orders() == 0
