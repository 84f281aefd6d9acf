"""
Tests for background loop assembly and the Celery task wrappers.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

from helpers import create_order, days_ago, load_order, mark_paid, set_stock, stock_of
from storefront.database.models import OrderStatus
from storefront.database.models.refund import RefundStatus
from storefront.services.refunds.service import RefundManager
from storefront.services.refunds.tasks import expire_pending_orders_task, settle_due_refunds_task
from storefront.services.workers import build_settlement_worker, expire_pending_orders


class TestBuildSettlementWorker:
    async def test_worker_settles_queued_refund(
        self, session_factory, gateways, settings, dispatcher
    ):
        order_id = await create_order(session_factory, gateway_order_id="order_1")
        await mark_paid(session_factory, order_id)
        async with session_factory() as session:
            refund = await RefundManager(session, gateways, settings=settings).create_refund(
                order_id, "Damaged"
            )

        worker = build_settlement_worker(
            settings=settings,
            gateways=gateways,
            session_factory=session_factory,
            dispatcher=dispatcher,
        )
        settled = await worker.run_once()
        await dispatcher.drain()

        assert settled == 1
        async with session_factory() as session:
            stored = await RefundManager(session, gateways, settings=settings).get_refund(
                refund.id
            )
        assert stored.status == RefundStatus.SUCCEEDED
        assert (await load_order(session_factory, order_id)).status == OrderStatus.REFUNDED


class TestExpirePendingOrders:
    async def test_cancels_stale_orders(self, session_factory, settings, dispatcher):
        await set_stock(session_factory, P1=0)
        stale = await create_order(
            session_factory, items=[("P1", 2, Decimal("500.00"))], placed_at=days_ago(1)
        )

        expired = await expire_pending_orders(
            settings=settings, session_factory=session_factory, dispatcher=dispatcher
        )

        assert expired == 1
        assert (await load_order(session_factory, stale)).status == OrderStatus.CANCELLED
        assert await stock_of(session_factory, "P1") == 2


class TestCeleryTasks:
    """Tests for the Celery task wrappers, run eagerly."""

    def test_settle_task_reports_settled_count(self):
        with patch(
            "storefront.services.refunds.tasks._settle_due", AsyncMock(return_value=2)
        ) as settle:
            result = settle_due_refunds_task.apply(kwargs={"limit": 5}).get()

        settle.assert_awaited_once_with(5)
        assert result == {"settled": 2}

    def test_expire_task_reports_expired_count(self):
        with patch(
            "storefront.services.refunds.tasks._expire_pending", AsyncMock(return_value=3)
        ):
            result = expire_pending_orders_task.apply().get()

        assert result == {"expired": 3}

    def test_task_names(self):
        assert settle_due_refunds_task.name == "refunds.settle_due"
        assert expire_pending_orders_task.name == "orders.expire_pending"
