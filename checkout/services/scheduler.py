"""In-process periodic runner for the reconcile and cleanup sweeps.

Every instance runs the loops; the distributed locks inside the sweeps make
sure only one instance does the work per tick.
"""
import asyncio
from typing import Awaitable, Callable, List

from checkout.logging import get_logger

logger = get_logger(__name__)


class PeriodicJob:
    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func

    async def run_forever(self) -> None:
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic job %s failed; retrying next tick", self.name)
            await asyncio.sleep(self.interval_seconds)


class SweepScheduler:
    """Start/stop a set of periodic jobs alongside the FastAPI lifespan."""

    def __init__(self, jobs: List[PeriodicJob]):
        self.jobs = jobs
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        for job in self.jobs:
            logger.info("Starting periodic job %s every %ss", job.name, job.interval_seconds)
            self._tasks.append(asyncio.create_task(job.run_forever(), name=f"sweep:{job.name}"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
