from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from fotoo.api.v1 import get_api_router
from fotoo.core.config import get_settings
from fotoo.core.db import create_engine, create_session_factory
from fotoo.core.jobs import get_job_backend
from fotoo.core.logging import configure_logging, get_logger, level_from_name
from fotoo.core.storage import get_storage
from fotoo.db.repository import AssetRecordStore
from fotoo.workers.tasks import build_processing_service, make_pool_handler


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(level=level_from_name(settings.log_level))
    logger = get_logger(component="app")
    storage = get_storage(settings)
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        jobs = get_job_backend()
        app.state.settings = settings
        app.state.storage = storage
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.record_store = AssetRecordStore(session_factory)
        app.state.jobs = jobs

        service = build_processing_service(settings, session_factory, storage)
        await jobs.start(make_pool_handler(service))
        logger.info(
            "app_started",
            job_backend=settings.normalized_job_backend,
            transcoder_backend=settings.transcoder_backend,
            storage_backend=settings.storage_backend,
        )
        try:
            yield
        finally:
            await jobs.stop()
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )

    app.include_router(get_api_router())
    return app


app = create_app()


__all__ = ["app", "create_app"]
