"""
Periodic scheduler sweep run inside the API process.

The sweep itself is synchronous SQLAlchemy work, so it runs in a worker
thread; the loop only decides when.
"""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..config import settings
from .scheduler import ElectionScheduler, ScheduleResult

logger = logging.getLogger(__name__)


def run_sweep(session_factory: Callable[[], Session],
              timeout_seconds: Optional[float] = None) -> ScheduleResult:
    db = session_factory()
    try:
        scheduler = ElectionScheduler(db)
        result = scheduler.run_scheduled_transitions(timeout_seconds=timeout_seconds)
        scheduler.expire_stale_sessions(settings.SESSION_TIMEOUT_MINUTES)
        return result
    finally:
        db.close()


class SchedulerLoop:
    def __init__(self, session_factory: Callable[[], Session], interval_seconds: float,
                 timeout_seconds: Optional[float] = None):
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run())
        logger.info("Election scheduler running every %ss", self.interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                result = await run_in_threadpool(run_sweep, self._session_factory, self.timeout_seconds)
                if result.started or result.completed:
                    logger.info("🗳️ %d election(s) started, %d completed", result.started, result.completed)
            except Exception:
                # keep the loop alive, the next tick retries
                logger.exception("Failed to run election scheduler")
            await asyncio.sleep(self.interval_seconds)
