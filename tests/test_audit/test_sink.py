"""
Tests for the audit sink, the background dispatcher and order notifications.
"""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.database.models import AuditLogEntry, OrderStatus
from storefront.services.audit.sink import Actor, ActorType, AuditAction, AuditEvent, AuditSink
from storefront.services.background import BackgroundDispatcher, run_periodically
from storefront.services.notifications.notifier import (
    LogNotifier,
    NotificationType,
    Notifier,
    OrderNotifications,
)

ADMIN = Actor(
    actor_id="admin-1",
    actor_type=ActorType.ADMIN,
    ip_address="10.0.0.7",
    user_agent="pytest",
)


async def _entries(session_factory) -> list[AuditLogEntry]:
    async with session_factory() as session:
        return list((await session.execute(select(AuditLogEntry))).scalars().all())


# ============================================================================
# Audit Sink Tests
# ============================================================================


class TestAuditSink:
    """Tests for AuditSink.record and AuditSink.write."""

    async def test_record_writes_entry(self, session_factory, dispatcher):
        sink = AuditSink(session_factory=session_factory, dispatcher=dispatcher)
        order_id = uuid.uuid4()

        sink.record(
            ADMIN,
            AuditAction.ORDER_STATUS,
            "order",
            order_id,
            {"from": OrderStatus.PAID, "to": OrderStatus.SHIPPED, "total": Decimal("10.50")},
        )
        await dispatcher.drain()

        (entry,) = await _entries(session_factory)
        assert entry.action == "order.status"
        assert entry.object_type == "order"
        assert entry.object_id == str(order_id)
        assert entry.actor_id == "admin-1"
        assert entry.actor_type == "admin"
        assert entry.ip_address == "10.0.0.7"
        assert entry.meta == {"from": "paid", "to": "shipped", "total": "10.50"}

    async def test_nested_metadata_is_json_safe(self, session_factory, dispatcher):
        sink = AuditSink(session_factory=session_factory, dispatcher=dispatcher)
        refund_id = uuid.uuid4()

        sink.record(
            ADMIN,
            AuditAction.REFUND_CREATE,
            "refund",
            refund_id,
            {"ids": (refund_id,), "nested": {"flag": True, "count": 2, "none": None}},
        )
        await dispatcher.drain()

        (entry,) = await _entries(session_factory)
        assert entry.meta == {
            "ids": [str(refund_id)],
            "nested": {"flag": True, "count": 2, "none": None},
        }

    async def test_write_failure_returns_false(self, tmp_path, dispatcher):
        # Engine without the schema: the insert fails with "no such table"
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        sink = AuditSink(session_factory=factory, dispatcher=dispatcher)
        event = AuditEvent(
            actor=ADMIN,
            action=AuditAction.ORDER_CANCEL,
            object_type="order",
            object_id="o-1",
        )

        try:
            assert await sink.write(event) is False
        finally:
            await engine.dispose()

    async def test_record_never_raises_for_failed_write(self, tmp_path, dispatcher):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        sink = AuditSink(session_factory=factory, dispatcher=dispatcher)

        try:
            sink.record(ADMIN, AuditAction.ORDER_CANCEL, "order", "o-1")
            await dispatcher.drain()
        finally:
            await engine.dispose()

        assert dispatcher.pending == 0


# ============================================================================
# Dispatcher Tests
# ============================================================================


class TestBackgroundDispatcher:
    """Tests for BackgroundDispatcher and run_periodically."""

    async def test_failed_task_is_contained(self):
        dispatcher = BackgroundDispatcher()

        async def explode():
            raise RuntimeError("side effect failed")

        task = dispatcher.submit(explode(), name="explode")
        await dispatcher.drain()

        assert task.done()
        assert dispatcher.pending == 0

    async def test_drain_without_tasks_returns(self):
        await BackgroundDispatcher().drain()

    async def test_run_periodically_survives_failures_until_stopped(self):
        stop = asyncio.Event()
        calls = []

        async def tick():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("first iteration fails")
            if len(calls) == 3:
                stop.set()

        await asyncio.wait_for(run_periodically(tick, 0.01, stop, name="tick"), timeout=5)

        assert calls == [0, 1, 2]


# ============================================================================
# Notification Tests
# ============================================================================


class TestOrderNotifications:
    """Tests for OrderNotifications."""

    async def test_send_delivers_through_notifier(self, dispatcher):
        notifier = AsyncMock(spec=LogNotifier)
        notifications = OrderNotifications(notifier=notifier, dispatcher=dispatcher)

        notifications.send(NotificationType.ORDER_PAID, "buyer@example.com", order_id="o-1")
        await dispatcher.drain()

        notifier.notify.assert_awaited_once_with(
            NotificationType.ORDER_PAID, "buyer@example.com", {"order_id": "o-1"}
        )

    async def test_notifier_failure_is_contained(self, dispatcher):
        notifier = AsyncMock(spec=LogNotifier)
        notifier.notify.side_effect = ConnectionError("smtp down")
        notifications = OrderNotifications(notifier=notifier, dispatcher=dispatcher)

        notifications.send(NotificationType.ORDER_CANCELLED, None, order_id="o-1")
        await dispatcher.drain()

        assert dispatcher.pending == 0

    def test_log_notifier_satisfies_protocol(self):
        assert isinstance(LogNotifier(), Notifier)

    @pytest.mark.parametrize("notification_type", list(NotificationType))
    async def test_log_notifier_accepts_every_type(self, notification_type):
        await LogNotifier().notify(notification_type, "someone@example.com", {"order_id": "o-1"})
