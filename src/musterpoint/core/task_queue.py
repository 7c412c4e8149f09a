"""
Background Task Queue for MusterPoint

Worker pool for fire-and-forget writes (location updates, push alerts).
Jobs are coroutine factories; failures are retried a bounded number of
times and logged, never surfaced to the submitter.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .logging import get_logger


JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class QueueStats:
    """Queue statistics"""
    jobs_queued: int = 0
    jobs_processed: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0
    jobs_dropped: int = 0
    average_wait_time: float = 0.0

    def update_wait_time(self, wait_time: float):
        """Update average wait time"""
        if self.jobs_processed == 0:
            self.average_wait_time = wait_time
        else:
            # Exponential moving average
            self.average_wait_time = (self.average_wait_time * 0.9) + (wait_time * 0.1)


@dataclass
class QueuedJob:
    name: str
    factory: JobFactory
    attempts: int = 0
    queued_at: float = field(default_factory=time.monotonic)


class BackgroundTaskQueue:
    """Bounded asyncio worker pool with at-least-once, best-effort retries"""

    def __init__(self, workers: int = 2, max_queue_size: int = 1000,
                 max_retries: int = 1, retry_delay: float = 0.05):
        self.logger = get_logger('task_queue')
        self.worker_count = workers
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.queue: Optional[asyncio.Queue] = None
        self.processing_tasks: Set[asyncio.Task] = set()
        self.running = False
        self.stats = QueueStats()

    async def start(self):
        """Start the worker pool"""
        if self.running:
            return

        self.queue = asyncio.Queue(maxsize=self.max_queue_size)
        self.running = True
        for index in range(self.worker_count):
            task = asyncio.create_task(self._worker(index))
            self.processing_tasks.add(task)
            task.add_done_callback(self.processing_tasks.discard)

        self.logger.info(f"Task queue started with {self.worker_count} workers")

    async def stop(self, drain: bool = True):
        """Stop the worker pool, optionally finishing queued jobs first"""
        if not self.running:
            return

        if drain:
            await self.join()
        self.running = False

        for task in self.processing_tasks:
            task.cancel()
        if self.processing_tasks:
            await asyncio.gather(*self.processing_tasks, return_exceptions=True)

        self.logger.info("Task queue stopped")

    def submit(self, name: str, factory: JobFactory) -> bool:
        """Enqueue a job; returns False when the queue is full or stopped"""
        if not self.running or self.queue is None:
            self.stats.jobs_dropped += 1
            self.logger.warning(f"Task queue not running, dropping job {name}")
            return False

        try:
            self.queue.put_nowait(QueuedJob(name=name, factory=factory))
        except asyncio.QueueFull:
            self.stats.jobs_dropped += 1
            self.logger.warning(f"Task queue full, dropping job {name}")
            return False

        self.stats.jobs_queued += 1
        return True

    async def join(self):
        """Wait until every queued job (including retries) has finished"""
        if self.queue is not None:
            await self.queue.join()

    async def _worker(self, index: int):
        while True:
            job = await self.queue.get()
            try:
                await self._run_job(job)
            finally:
                self.queue.task_done()

    async def _run_job(self, job: QueuedJob):
        self.stats.update_wait_time(time.monotonic() - job.queued_at)
        while True:
            job.attempts += 1
            try:
                await job.factory()
                self.stats.jobs_processed += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if job.attempts > self.max_retries:
                    self.stats.jobs_failed += 1
                    self.logger.error(f"Job {job.name} failed after {job.attempts} attempts: {e}")
                    return
                self.stats.jobs_retried += 1
                self.logger.warning(f"Job {job.name} failed (attempt {job.attempts}), retrying: {e}")
                await asyncio.sleep(self.retry_delay * job.attempts)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'workers': self.worker_count,
            'queue_size': self.queue.qsize() if self.queue else 0,
            'jobs_queued': self.stats.jobs_queued,
            'jobs_processed': self.stats.jobs_processed,
            'jobs_failed': self.stats.jobs_failed,
            'jobs_retried': self.stats.jobs_retried,
            'jobs_dropped': self.stats.jobs_dropped,
            'average_wait_time': self.stats.average_wait_time,
        }
