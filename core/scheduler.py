# core/scheduler.py
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    interval: timedelta
    fn: Callable[[], Any]
    next_run: datetime
    last_run: Optional[datetime] = None


class TaskScheduler:
    """
    Interval jobs driven by an owned asyncio task.

    The clock and sleep are injectable so tests can step time by hand; the
    loop only exists between ``start()`` and ``stop()``.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self.tick_seconds = tick_seconds
        self._jobs: Dict[str, Job] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_job(self, name: str, interval: timedelta, fn: Callable[[], Any], run_immediately: bool = False) -> Job:
        if interval.total_seconds() <= 0:
            raise ValueError("interval must be positive")
        if name in self._jobs:
            raise ValueError(f"Job {name!r} already registered")
        now = self._clock()
        job = Job(name=name, interval=interval, fn=fn, next_run=now if run_immediately else now + interval)
        self._jobs[name] = job
        logger.info(f"🗓️ Job {name} scheduled every {interval}")
        return job

    def remove_job(self, name: str) -> None:
        self._jobs.pop(name, None)

    def run_pending(self) -> List[str]:
        """Run every due job once; returns the names that ran."""
        ran = []
        now = self._clock()
        for job in list(self._jobs.values()):
            if job.next_run > now:
                continue
            try:
                job.fn()
            except Exception as e:
                # One failing job must not stop the others or the loop
                logger.exception(f"❌ Job {job.name} failed: {e}")
            job.last_run = now
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    async def _loop(self) -> None:
        while True:
            await asyncio.to_thread(self.run_pending)
            await self._sleep(self.tick_seconds)

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"✅ Scheduler started with {len(self._jobs)} job(s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("✅ Scheduler stopped")
