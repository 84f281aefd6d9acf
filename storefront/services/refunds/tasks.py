"""
Celery tasks for refund settlement and order expiry.

Deployments that run a Celery worker instead of the in-process loops
schedule ``refunds.settle_due`` and ``orders.expire_pending`` with beat.
Each task runs one pass in a fresh event loop and disposes the engine
afterwards so pooled connections never outlive their loop.
"""

import asyncio
from typing import Any

from celery import Task, shared_task

from storefront.core.config import get_settings
from storefront.core.logging import get_logger
from storefront.database.connection import close_database_connections
from storefront.services.background import BackgroundDispatcher
from storefront.services.workers import build_settlement_worker, expire_pending_orders

logger = get_logger(__name__)


class SettlementTask(Task):
    """Base task that logs task outcomes."""

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Settlement task failed",
            task=self.name,
            task_id=task_id,
            exception=str(exc),
            exc_info=einfo,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Settlement task completed",
            task=self.name,
            task_id=task_id,
            result=retval,
        )


async def _settle_due(limit: int) -> int:
    dispatcher = BackgroundDispatcher()
    try:
        worker = build_settlement_worker(settings=get_settings(), dispatcher=dispatcher)
        return await worker.run_once(limit=limit)
    finally:
        await dispatcher.drain(timeout=30)
        await close_database_connections()


async def _expire_pending() -> int:
    dispatcher = BackgroundDispatcher()
    try:
        return await expire_pending_orders(settings=get_settings(), dispatcher=dispatcher)
    finally:
        await dispatcher.drain(timeout=30)
        await close_database_connections()


@shared_task(
    bind=True,
    base=SettlementTask,
    name="refunds.settle_due",
    time_limit=300,
    soft_time_limit=240,
)
def settle_due_refunds_task(self: Task, limit: int = 50) -> dict[str, Any]:
    """
    Run every due refund settlement job once.

    Failed attempts are rescheduled in the job table, so the task itself
    is never retried.
    """
    logger.info("Processing due settlement jobs", task_id=self.request.id, limit=limit)
    settled = asyncio.run(_settle_due(limit))
    return {"settled": settled}


@shared_task(
    bind=True,
    base=SettlementTask,
    name="orders.expire_pending",
    time_limit=300,
    soft_time_limit=240,
)
def expire_pending_orders_task(self: Task) -> dict[str, Any]:
    """Cancel unpaid orders older than the pending TTL and restore their stock."""
    logger.info("Expiring stale pending orders", task_id=self.request.id)
    expired = asyncio.run(_expire_pending())
    return {"expired": expired}
