"""
Refund settlement queue and worker.

Settlement jobs live in the ``settlement_jobs`` table. A worker claims a due
job with a conditional UPDATE (pending -> processing), runs the refund
settlement, and either completes the job or reschedules it with exponential
backoff. After ``max_attempts`` the job is failed and left for an operator.
Delivery is at-least-once; the gateway call is made idempotent by keying it
on the refund id.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.settlement_job import (
    OPEN_JOB_CLAUSE,
    REFUND_SETTLE,
    JobStatus,
    SettlementJob,
)
from storefront.database.upsert import dialect_insert
from storefront.services.background import run_periodically

logger = get_logger(__name__)


def compute_backoff(attempts: int, initial: float, maximum: float) -> float:
    """
    Delay before the next attempt after ``attempts`` failures.

    Example:
        >>> compute_backoff(1, 30, 900), compute_backoff(3, 30, 900)
        (30.0, 120.0)
    """
    return float(min(initial * (2 ** max(attempts - 1, 0)), maximum))


class SettlementQueue:
    """
    Settlement job storage.

    Attributes:
        session: Async database session
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(
        self,
        refund_id: uuid.UUID,
        max_attempts: int,
        run_at: Optional[datetime] = None,
    ) -> bool:
        """
        Queue settlement of a refund unless an open job already exists.

        Does not commit.

        Returns:
            True if a new job was queued
        """
        table = SettlementJob.__table__
        now = utcnow()
        stmt = (
            dialect_insert(self.session, table)
            .values(
                id=uuid.uuid4(),
                kind=REFUND_SETTLE,
                refund_id=refund_id,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=max_attempts,
                next_run_at=run_at or now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[table.c.refund_id],
                index_where=OPEN_JOB_CLAUSE,
            )
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        queued = result.scalar_one_or_none() is not None

        logger.info(
            "Settlement job queued" if queued else "Settlement job already open",
            refund_id=str(refund_id),
        )
        return queued

    async def get(self, job_id: uuid.UUID) -> Optional[SettlementJob]:
        stmt = (
            select(SettlementJob)
            .where(SettlementJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def for_refund(self, refund_id: uuid.UUID) -> list[SettlementJob]:
        stmt = (
            select(SettlementJob)
            .where(SettlementJob.refund_id == refund_id)
            .order_by(SettlementJob.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def due(self, now: datetime, limit: int = 10) -> list[uuid.UUID]:
        """Ids of pending jobs whose ``next_run_at`` has passed, oldest first."""
        stmt = (
            select(SettlementJob.id)
            .where(
                SettlementJob.status == JobStatus.PENDING,
                SettlementJob.next_run_at <= now,
            )
            .order_by(SettlementJob.next_run_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, job_id: uuid.UUID) -> bool:
        """Move a pending job to processing; False if another worker got it."""
        return await self._set_status(
            job_id,
            JobStatus.PROCESSING,
            {JobStatus.PENDING},
        )

    async def complete(self, job_id: uuid.UUID) -> bool:
        return await self._set_status(
            job_id,
            JobStatus.COMPLETED,
            {JobStatus.PROCESSING},
            last_error=None,
        )

    async def fail(
        self,
        job_id: uuid.UUID,
        attempts_before: int,
        max_attempts: int,
        error: str,
        now: datetime,
        initial_backoff: float,
        max_backoff: float,
    ) -> JobStatus:
        """
        Record a failed attempt.

        Returns:
            PENDING if the job was rescheduled, FAILED if attempts ran out
        """
        attempts = attempts_before + 1
        if attempts >= max_attempts:
            await self._set_status(
                job_id,
                JobStatus.FAILED,
                {JobStatus.PROCESSING},
                attempts=attempts,
                last_error=error,
            )
            return JobStatus.FAILED

        delay = compute_backoff(attempts, initial_backoff, max_backoff)
        await self._set_status(
            job_id,
            JobStatus.PENDING,
            {JobStatus.PROCESSING},
            attempts=attempts,
            last_error=error,
            next_run_at=now + timedelta(seconds=delay),
        )
        return JobStatus.PENDING

    async def release_stale(self, updated_before: datetime) -> int:
        """Return jobs stuck in processing (crashed worker) to the queue."""
        stmt = (
            update(SettlementJob)
            .where(
                SettlementJob.status == JobStatus.PROCESSING,
                SettlementJob.updated_at < updated_before,
            )
            .values(status=JobStatus.PENDING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def _set_status(
        self,
        job_id: uuid.UUID,
        target: JobStatus,
        allowed_from: set[JobStatus],
        **values: Any,
    ) -> bool:
        stmt = (
            update(SettlementJob)
            .where(SettlementJob.id == job_id, SettlementJob.status.in_(allowed_from))
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class RefundSettler(Protocol):
    async def settle(self, refund_id: uuid.UUID) -> Any:
        ...


class SettlementWorker:
    """
    Polls the settlement queue and runs due jobs.

    Each job runs in its own session. Any exception from settlement counts
    as a failed attempt.

    Attributes:
        session_factory: Factory producing sessions
        manager_factory: Builds the refund settler for a session
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        manager_factory: Callable[[AsyncSession], RefundSettler],
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.manager_factory = manager_factory
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    async def run_once(self, limit: int = 10) -> int:
        """
        Run every due job once.

        Returns:
            Number of jobs that settled successfully
        """
        now = self.clock()
        async with self.session_factory() as session:
            queue = SettlementQueue(session)
            stale_cutoff = now - timedelta(seconds=self.settings.settlement_stale_after_seconds)
            released = await queue.release_stale(stale_cutoff)
            job_ids = await queue.due(now, limit=limit)
            await session.commit()

        if released:
            logger.warning("Released stale settlement jobs", count=released)

        settled = 0
        for job_id in job_ids:
            if await self.run_job(job_id):
                settled += 1
        return settled

    async def run_job(self, job_id: uuid.UUID) -> bool:
        """
        Claim and run one job.

        Returns:
            True if the refund settled, False if the job was taken by another
            worker or the attempt failed
        """
        async with self.session_factory() as session:
            queue = SettlementQueue(session)
            if not await queue.claim(job_id):
                await session.rollback()
                return False
            await session.commit()

            job = await queue.get(job_id)
            refund_id, attempts, max_attempts = job.refund_id, job.attempts, job.max_attempts
            log = logger.bind(job_id=str(job_id), refund_id=str(refund_id))

            try:
                await self.manager_factory(session).settle(refund_id)
            except Exception as e:
                await session.rollback()
                status = await queue.fail(
                    job_id,
                    attempts,
                    max_attempts,
                    error=f"{type(e).__name__}: {e}",
                    now=self.clock(),
                    initial_backoff=self.settings.settlement_initial_backoff_seconds,
                    max_backoff=self.settings.settlement_max_backoff_seconds,
                )
                await session.commit()
                if status == JobStatus.FAILED:
                    log.error(
                        "Settlement job exhausted, manual intervention required",
                        attempts=attempts + 1,
                        error=str(e),
                    )
                else:
                    log.warning(
                        "Settlement attempt failed, rescheduled",
                        attempts=attempts + 1,
                        error=str(e),
                    )
                return False

            await queue.complete(job_id)
            await session.commit()
            log.info("Settlement job completed")
            return True

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        await run_periodically(
            self.run_once,
            self.settings.settlement_poll_interval_seconds,
            stop_event,
            name="refund_settlement",
        )
