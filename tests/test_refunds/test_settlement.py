"""
Tests for the settlement job queue and worker.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from helpers import create_order, mark_paid
from storefront.database.base import as_utc, utcnow
from storefront.database.models.refund import RefundStatus
from storefront.database.models.settlement_job import JobStatus
from storefront.services.refunds.repository import RefundRepository
from storefront.services.refunds.service import RefundManager
from storefront.services.refunds.settlement import SettlementQueue, SettlementWorker, compute_backoff


class Clock:
    """Controllable clock for the worker."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def worker(session_factory, gateways, settings, clock) -> SettlementWorker:
    return SettlementWorker(
        session_factory=session_factory,
        manager_factory=lambda session: RefundManager(
            session, gateways, settings=settings, clock=clock
        ),
        settings=settings,
        clock=clock,
    )


async def _queued_refund(session_factory, gateways, settings):
    """Full refund of a paid order, with its settlement job queued."""
    order_id = await create_order(session_factory, gateway_order_id="order_1")
    await mark_paid(session_factory, order_id)
    async with session_factory() as session:
        return await RefundManager(session, gateways, settings=settings).create_refund(
            order_id, "Damaged"
        )


async def _job_for(session_factory, refund_id):
    async with session_factory() as session:
        (job,) = await SettlementQueue(session).for_refund(refund_id)
        return job


async def _refund_status(session_factory, gateways, settings, refund_id):
    async with session_factory() as session:
        refund = await RefundManager(session, gateways, settings=settings).get_refund(refund_id)
        return refund.status


# ============================================================================
# Backoff Tests
# ============================================================================


class TestComputeBackoff:
    @pytest.mark.parametrize(
        "attempts,expected",
        [(1, 30.0), (2, 60.0), (3, 120.0), (5, 480.0), (6, 900.0), (20, 900.0)],
    )
    def test_doubles_up_to_maximum(self, attempts, expected):
        assert compute_backoff(attempts, 30, 900) == expected


# ============================================================================
# Queue Tests
# ============================================================================


class TestSettlementQueue:
    """Tests for SettlementQueue."""

    async def test_one_open_job_per_refund(self, session_factory, gateways, settings):
        refund = await _queued_refund(session_factory, gateways, settings)

        async with session_factory() as session:
            queued = await SettlementQueue(session).enqueue(refund.id, max_attempts=3)
            await session.commit()

        assert queued is False
        assert (await _job_for(session_factory, refund.id)).status == JobStatus.PENDING

    async def test_claim_is_exclusive(self, session_factory, gateways, settings):
        refund = await _queued_refund(session_factory, gateways, settings)
        job = await _job_for(session_factory, refund.id)

        async with session_factory() as session:
            queue = SettlementQueue(session)
            first = await queue.claim(job.id)
            second = await queue.claim(job.id)
            await session.commit()

        assert (first, second) == (True, False)


# ============================================================================
# Worker Tests
# ============================================================================


class TestSettlementWorker:
    """Tests for SettlementWorker."""

    async def test_due_job_settles_refund(self, worker, session_factory, gateways, settings):
        refund = await _queued_refund(session_factory, gateways, settings)

        settled = await worker.run_once()

        assert settled == 1
        assert (await _job_for(session_factory, refund.id)).status == JobStatus.COMPLETED
        status = await _refund_status(session_factory, gateways, settings, refund.id)
        assert status == RefundStatus.SUCCEEDED

    async def test_failed_attempt_is_rescheduled_with_backoff(
        self, worker, clock, session_factory, gateways, settings, fake_gateway
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        fake_gateway.fail_refund = True

        assert await worker.run_once() == 0

        job = await _job_for(session_factory, refund.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert "Refund rejected" in job.last_error
        assert as_utc(job.next_run_at) == clock.now + timedelta(seconds=30)

        # not due yet
        fake_gateway.fail_refund = False
        assert await worker.run_once() == 0

        clock.advance(seconds=31)
        assert await worker.run_once() == 1
        status = await _refund_status(session_factory, gateways, settings, refund.id)
        assert status == RefundStatus.SUCCEEDED

    async def test_job_fails_after_max_attempts(
        self, worker, clock, session_factory, gateways, settings, fake_gateway
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        fake_gateway.fail_refund = True

        for _ in range(settings.settlement_max_attempts + 1):
            await worker.run_once()
            clock.advance(hours=1)

        job = await _job_for(session_factory, refund.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == settings.settlement_max_attempts
        assert len(fake_gateway.refund_calls) == settings.settlement_max_attempts

    async def test_any_exception_counts_as_failed_attempt(
        self, session_factory, gateways, settings, clock
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        manager = AsyncMock()
        manager.settle.side_effect = RuntimeError("boom")
        worker = SettlementWorker(
            session_factory=session_factory,
            manager_factory=lambda session: manager,
            settings=settings,
            clock=clock,
        )

        assert await worker.run_once() == 0

        job = await _job_for(session_factory, refund.id)
        assert job.attempts == 1
        assert job.last_error == "RuntimeError: boom"

    async def test_claimed_job_is_skipped(self, worker, session_factory, gateways, settings):
        refund = await _queued_refund(session_factory, gateways, settings)
        job = await _job_for(session_factory, refund.id)
        async with session_factory() as session:
            await SettlementQueue(session).claim(job.id)
            await session.commit()

        assert await worker.run_job(job.id) is False

    async def test_stale_processing_job_is_released(
        self, worker, clock, session_factory, gateways, settings
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        job = await _job_for(session_factory, refund.id)
        async with session_factory() as session:
            await SettlementQueue(session).claim(job.id)
            await session.commit()

        clock.advance(seconds=settings.settlement_stale_after_seconds + 60)

        assert await worker.run_once() == 1
        assert (await _job_for(session_factory, refund.id)).status == JobStatus.COMPLETED

    async def test_refund_abandoned_in_processing_is_resumed(
        self, worker, clock, session_factory, gateways, settings, fake_gateway
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        job = await _job_for(session_factory, refund.id)
        # worker died after claiming the job and the refund
        async with session_factory() as session:
            await SettlementQueue(session).claim(job.id)
            await RefundRepository(session).transition(
                refund.id, RefundStatus.PROCESSING, {RefundStatus.REQUESTED}
            )
            await session.commit()

        clock.advance(seconds=settings.settlement_stale_after_seconds + 60)

        assert await worker.run_once() == 1
        assert (await _job_for(session_factory, refund.id)).status == JobStatus.COMPLETED
        async with session_factory() as session:
            settled = await RefundManager(session, gateways, settings=settings).get_refund(
                refund.id
            )
        assert settled.status == RefundStatus.SUCCEEDED
        assert settled.attempts == 2
        assert [call["idempotency_key"] for call in fake_gateway.refund_calls] == [
            f"refund_{refund.id}"
        ]

    async def test_refund_still_processing_fails_job_for_operator(
        self, worker, clock, session_factory, gateways, settings, fake_gateway
    ):
        refund = await _queued_refund(session_factory, gateways, settings)
        async with session_factory() as session:
            await RefundRepository(session).transition(
                refund.id, RefundStatus.PROCESSING, {RefundStatus.REQUESTED}
            )
            await session.commit()

        assert await worker.run_once() == 0
        job = await _job_for(session_factory, refund.id)
        assert job.status == JobStatus.PENDING
        assert "already in progress" in job.last_error

        for _ in range(settings.settlement_max_attempts - 1):
            clock.advance(seconds=121)
            await worker.run_once()

        job = await _job_for(session_factory, refund.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == settings.settlement_max_attempts
        assert fake_gateway.refund_calls == []
        status = await _refund_status(session_factory, gateways, settings, refund.id)
        assert status == RefundStatus.PROCESSING

    async def test_refund_amount_matches_payment(
        self, worker, session_factory, gateways, settings, fake_gateway
    ):
        await _queued_refund(session_factory, gateways, settings)

        await worker.run_once()

        assert fake_gateway.refund_calls[0]["amount"] == Decimal("1180.00")
