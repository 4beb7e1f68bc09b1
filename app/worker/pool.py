import asyncio
import logging

from app.models.database import SessionLocal
from app.worker.tasks import run_next_job, schedule_reconciliation

logger = logging.getLogger(__name__)


class WorkerPool:
    """Asyncio tasks that drain the job queue; handlers run in threads."""

    def __init__(
        self,
        concurrency: int = 4,
        poll_interval: float = 1,
        reconcile_interval: float = 180,
        session_factory=SessionLocal,
    ):
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.reconcile_interval = reconcile_interval
        self.session_factory = session_factory
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"job-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._scheduler_loop(), name="job-scheduler"))
        logger.info("Worker pool started with %s workers", self.concurrency)

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await asyncio.to_thread(run_next_job, self.session_factory)
            except Exception:
                logger.exception("Worker %s failed to process a job", index)
                processed = False
            if not processed:
                await self._wait(self.poll_interval)

    async def _scheduler_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                if await asyncio.to_thread(schedule_reconciliation, self.session_factory):
                    logger.info("Scheduled reconciliation sweep")
            except Exception:
                logger.exception("Failed to schedule reconciliation")
            await self._wait(self.reconcile_interval)
