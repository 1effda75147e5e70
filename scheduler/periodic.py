"""
Recurring background jobs.

Each ``PeriodicJob`` is a plain asyncio task that sleeps ``interval``
seconds between ticks.  A tick first takes the job's distributed lock; if
another instance holds it the tick is skipped, which is logged at INFO and
is not a failure.  If the lock store itself errors the tick does not run
either, but it is logged and reported as ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from scheduler.lock import DistributedLock

logger = logging.getLogger(__name__)

RAN = "ran"
SKIPPED = "skipped"
FAILED = "failed"


class PeriodicJob:
    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[object]],
        lock: DistributedLock,
        *,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._lock = lock
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> str:
        """Run one tick under the lock.  Returns ``ran``, ``skipped`` or ``failed``."""
        try:
            async with self._lock.hold(self.name) as acquired:
                if not acquired:
                    error = self._lock.acquire_error(self.name)
                    if error is not None:
                        logger.error("Job %s failed: lock store unavailable (%s)", self.name, error)
                        return FAILED
                    logger.info("Job %s skipped: lock held by another instance", self.name)
                    return SKIPPED
                await self._tick()
        except Exception:
            logger.exception("Job %s failed", self.name)
            return FAILED
        logger.info("Job %s completed", self.name)
        return RAN

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        logger.info("Job %s scheduled every %ss", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Job %s stopped", self.name)


class JobScheduler:
    """Owns the app's periodic jobs and starts/stops them with the app."""

    def __init__(self) -> None:
        self.jobs: List[PeriodicJob] = []

    def add(self, job: PeriodicJob) -> PeriodicJob:
        self.jobs.append(job)
        return job

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
