from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from functools import lru_cache

from redis import Redis
from rq import Queue, Retry

from fotoo.workers.pool import JobHandler, WorkerPool

from .config import Settings, get_settings


class BaseJobBackend(ABC):
    @abstractmethod
    async def enqueue(self, asset_id: str) -> None: ...

    async def start(self, handler: JobHandler) -> None:
        """Hook for backends that consume jobs inside the API process."""

    async def stop(self) -> None:
        """Counterpart of ``start``."""


class ImmediateJobBackend(BaseJobBackend):
    async def enqueue(self, asset_id: str) -> None:
        from fotoo.workers.tasks import run_job

        await asyncio.to_thread(run_job, asset_id)


class RQJobBackend(BaseJobBackend):
    def __init__(self, queue: Queue, settings: Settings):
        self.queue = queue
        self.settings = settings

    async def enqueue(self, asset_id: str) -> None:
        from fotoo.workers.tasks import run_job

        retry = None
        if self.settings.job_max_attempts > 1:
            retry = Retry(max=self.settings.job_max_attempts - 1, interval=self.settings.retry_intervals())
        self.queue.enqueue(
            run_job,
            asset_id,
            retry=retry,
            job_timeout=self.settings.job_timeout_s,
            description=f"process-asset:{asset_id}",
        )


class WorkerPoolJobBackend(BaseJobBackend):
    """Feeds the in-process worker pool; started by the application lifespan."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.pool: WorkerPool | None = None

    async def start(self, handler: JobHandler) -> None:
        self.pool = WorkerPool(
            handler,
            concurrency=self.settings.worker_concurrency,
            max_attempts=self.settings.job_max_attempts,
            initial_delay_s=self.settings.job_retry_initial_delay_s,
            backoff_base=self.settings.job_retry_backoff_base,
            max_queue_size=self.settings.job_queue_max_size,
        )
        await self.pool.start()

    async def enqueue(self, asset_id: str) -> None:
        if self.pool is None:
            raise RuntimeError("worker pool backend was not started")
        await self.pool.submit(asset_id)

    async def stop(self) -> None:
        if self.pool is not None:
            await self.pool.stop()
            self.pool = None


def get_rq_queue(settings: Settings) -> Queue:
    connection = Redis.from_url(settings.redis_url)
    return Queue(settings.job_queue_name, connection=connection)


@lru_cache()
def get_job_backend() -> BaseJobBackend:
    settings = get_settings()
    backend = settings.normalized_job_backend
    if backend == "immediate":
        return ImmediateJobBackend()
    if backend == "pool":
        return WorkerPoolJobBackend(settings)
    if backend == "rq":  # pragma: no cover - requires redis
        return RQJobBackend(get_rq_queue(settings), settings)
    raise ValueError(f"Unsupported job backend: {settings.job_queue_backend}")


__all__ = [
    "BaseJobBackend",
    "ImmediateJobBackend",
    "RQJobBackend",
    "WorkerPoolJobBackend",
    "get_job_backend",
    "get_rq_queue",
]
