from __future__ import annotations

import asyncio

from rq import get_current_job
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fotoo.core.config import Settings, get_settings
from fotoo.core.db import create_engine, create_session_factory
from fotoo.core.logging import configure_logging, job_log_context, level_from_name
from fotoo.core.storage import Storage, get_storage
from fotoo.db.repository import AssetRecordStore
from fotoo.media.transcoder import TranscoderBackend, get_transcoder
from fotoo.services.processing_service import ProcessingService
from fotoo.workers.pool import JobHandler


def build_processing_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    storage: Storage | None = None,
    transcoder: TranscoderBackend | None = None,
) -> ProcessingService:
    return ProcessingService(
        settings,
        storage or get_storage(settings),
        AssetRecordStore(session_factory),
        transcoder or get_transcoder(settings),
    )


def make_pool_handler(service: ProcessingService) -> JobHandler:
    async def handle(asset_id: str, final_attempt: bool) -> None:
        await service.process_asset(asset_id, final_attempt=final_attempt)

    return handle


def _is_final_attempt() -> bool:
    job = get_current_job()
    if job is None:
        return True
    return not job.retries_left


def run_job(asset_id: str) -> None:
    """Entry-point executed by the job backend (RQ or inline)."""

    settings = get_settings()
    configure_logging(level_from_name(settings.log_level))

    engine = create_engine(settings)
    service = build_processing_service(settings, create_session_factory(engine))
    final_attempt = _is_final_attempt()

    async def _runner() -> None:
        try:
            with job_log_context(asset_id=asset_id, final_attempt=final_attempt):
                await service.process_asset(asset_id, final_attempt=final_attempt)
        finally:
            await engine.dispose()

    asyncio.run(_runner())


__all__ = ["build_processing_service", "make_pool_handler", "run_job"]
