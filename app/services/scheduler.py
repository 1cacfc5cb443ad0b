# app/services/scheduler.py
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class MaintenanceScheduler:
    """
    Runs each registered job in its own background loop.

    A job run finishes before its next sleep starts, so a slow run delays the
    next one instead of overlapping it. Failures are logged per run and the
    loop keeps going.
    """

    def __init__(self):
        self._jobs: Dict[str, tuple] = {}
        self._tasks: List[asyncio.Task] = []

    def add_job(self, name: str, job: Job, interval_seconds: float) -> None:
        self._jobs[name] = (job, interval_seconds)

    async def run_job(self, name: str) -> Optional[object]:
        job, _ = self._jobs[name]
        try:
            result = await job()
            logger.debug("Job '%s' finished: %s", name, result)
            return result
        except Exception:
            logger.error("Maintenance job '%s' failed", name, exc_info=True)
            return None

    async def _loop(self, name: str, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.run_job(name)

    def start(self) -> None:
        if self._tasks:
            return
        for name, (_, interval) in self._jobs.items():
            self._tasks.append(asyncio.create_task(self._loop(name, interval), name=f"maintenance:{name}"))
            logger.info("Scheduled job '%s' every %ss", name, interval)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped.")

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)
