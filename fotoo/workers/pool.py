from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fotoo.core.logging import get_logger, job_log_context

# Receives the asset id and whether this delivery is the last one allowed.
JobHandler = Callable[[str, bool], Awaitable[object]]
Sleeper = Callable[[float], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class JobDescriptor:
    asset_id: str
    attempt: int = 1


class WorkerPool:
    """Fixed set of long-lived asyncio workers draining a bounded job queue.

    A job is acknowledged when the handler returns. If it raises, the job is
    redelivered after an exponential backoff until ``max_attempts`` deliveries
    have been made. Jobs for different assets may finish in any order.
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        initial_delay_s: float = 5.0,
        backoff_base: float = 2.0,
        max_queue_size: int = 100,
        sleep: Sleeper = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.handler = handler
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.initial_delay_s = initial_delay_s
        self.backoff_base = backoff_base
        self.max_queue_size = max_queue_size
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue[JobDescriptor]] = None
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()
        self.logger = get_logger(component="worker_pool")

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before redelivering a job whose ``attempt``-th delivery failed."""
        return self.initial_delay_s * self.backoff_base ** (attempt - 1)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._workers = [asyncio.create_task(self._worker(index)) for index in range(self.concurrency)]
        self.logger.info("worker_pool_started", concurrency=self.concurrency)

    async def submit(self, asset_id: str) -> None:
        if self._queue is None or not self.running:
            raise RuntimeError("worker pool is not running")
        await self._queue.put(JobDescriptor(asset_id=asset_id))

    async def join(self) -> None:
        """Wait until every submitted job, including scheduled retries, is settled."""
        if self._queue is None:
            return
        while True:
            await self._queue.join()
            if not self._timers:
                return
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def stop(self) -> None:
        pending = [*self._timers, *self._workers]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._workers = []
        self._queue = None
        self.logger.info("worker_pool_stopped")

    async def _worker(self, index: int) -> None:
        queue = self._queue
        if queue is None:
            raise RuntimeError("worker pool is not running")
        while True:
            job = await queue.get()
            try:
                await self._handle(job, worker=index)
            finally:
                queue.task_done()

    async def _handle(self, job: JobDescriptor, *, worker: int) -> None:
        final_attempt = job.attempt >= self.max_attempts
        with job_log_context(asset_id=job.asset_id, attempt=job.attempt, worker=worker):
            try:
                await self.handler(job.asset_id, final_attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if final_attempt:
                    self.logger.error("job_exhausted", error=str(exc), attempts=job.attempt)
                    return
                delay = self.backoff_delay(job.attempt)
                self.logger.warning("job_retry_scheduled", error=str(exc), delay_s=delay)
                self._schedule(JobDescriptor(job.asset_id, job.attempt + 1), delay)
            else:
                self.logger.debug("job_acknowledged")

    def _schedule(self, job: JobDescriptor, delay: float) -> None:
        task = asyncio.create_task(self._redeliver(job, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _redeliver(self, job: JobDescriptor, delay: float) -> None:
        await self._sleep(delay)
        if self._queue is not None:
            await self._queue.put(job)


__all__ = ["JobDescriptor", "JobHandler", "WorkerPool"]
