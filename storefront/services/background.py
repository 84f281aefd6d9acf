"""
Fire-and-forget dispatch of best-effort side effects.

Audit writes and notifications run as detached asyncio tasks after the
operation they describe has committed. Failures are logged here and never
reach the caller.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from storefront.core.logging import get_logger

logger = get_logger(__name__)


class BackgroundDispatcher:
    """
    Runs coroutines detached from the request path.

    Holds a strong reference to each task until it finishes so that pending
    side effects are not garbage collected, and exposes ``drain`` for tests
    and shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule ``coro`` on the running loop.

        Args:
            coro: Coroutine to run
            name: Label used in failure logs

        Returns:
            The scheduled task
        """
        task = asyncio.ensure_future(coro)
        label = name or getattr(coro, "__qualname__", "side_effect")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))
        return task

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled", task=label)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                task=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all scheduled side effects to finish."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Background tasks still running after drain", count=len(pending))


async def run_periodically(
    func: Callable[[], Awaitable[Any]],
    interval: float,
    stop_event: asyncio.Event,
    name: str,
) -> None:
    """
    Call ``func`` every ``interval`` seconds until ``stop_event`` is set.

    A failing iteration is logged and the loop continues.
    """
    logger.info("Periodic task started", task=name, interval_seconds=interval)
    while not stop_event.is_set():
        try:
            await func()
        except Exception as e:
            logger.exception("Periodic task iteration failed", task=name, error=str(e))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logger.info("Periodic task stopped", task=name)


_dispatcher: Optional[BackgroundDispatcher] = None


def get_dispatcher() -> BackgroundDispatcher:
    """Process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = BackgroundDispatcher()
    return _dispatcher
