"""
Observed background tasks.

Writes that the HTTP response does not wait for (audit events) are
submitted here instead of being fired off unobserved. Each task is
retried on store errors, and a task that still fails is logged at error
level, counted in Prometheus and kept on ``failures``.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Set, Tuple, Type

import structlog
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tutorpay.database.models import utcnow
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class BackgroundFailure:
    """A background task that gave up."""

    task: str
    error: BaseException
    failed_at: datetime = field(default_factory=utcnow)


class BackgroundRunner:
    """Tracks fire-and-forget coroutines so none of them fail silently."""

    def __init__(
        self,
        max_attempts: int = 3,
        wait_min: float = 0.05,
        wait_max: float = 2.0,
        retry_on: Tuple[Type[BaseException], ...] = (SQLAlchemyError, OSError),
    ):
        self.max_attempts = max_attempts
        self.wait_min = wait_min
        self.wait_max = wait_max
        self.retry_on = retry_on
        self.failures: List[BackgroundFailure] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """
        Schedule ``factory()`` to run in the background.

        Args:
            name: Task name used in logs and metrics
            factory: Zero-argument callable returning a fresh awaitable per attempt

        Returns:
            asyncio.Task: The tracked task
        """
        task = asyncio.create_task(self._run(name, factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(self.retry_on),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.wait_min, min=self.wait_min, max=self.wait_max),
                reraise=True,
            ):
                with attempt:
                    await factory()
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name)
            raise
        except Exception as e:
            metrics.record_background_failure(name)
            self.failures.append(BackgroundFailure(task=name, error=e))
            logger.error(
                "background_task_failed",
                task=name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every outstanding task (used on shutdown and in tests)."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("background_tasks_draining", count=len(pending))
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.error("background_tasks_not_drained", count=len(still_pending))
            for task in still_pending:
                task.cancel()
