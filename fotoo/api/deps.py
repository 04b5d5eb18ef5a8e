from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from fotoo.core.auth import AuthContext, get_auth_context
from fotoo.core.config import Settings, get_settings
from fotoo.core.jobs import BaseJobBackend
from fotoo.core.storage import Storage
from fotoo.db.repository import AssetRecordStore
from fotoo.services.media_service import MediaService


def get_storage(request: Request) -> Storage:
    storage: Storage = request.app.state.storage
    return storage


def get_record_store(request: Request) -> AssetRecordStore:
    store: AssetRecordStore = request.app.state.record_store
    return store


def get_jobs(request: Request) -> BaseJobBackend:
    jobs: BaseJobBackend = request.app.state.jobs
    return jobs


def get_app_settings() -> Settings:
    return get_settings()


def get_media_service(
    storage: Storage = Depends(get_storage),
    store: AssetRecordStore = Depends(get_record_store),
    jobs: BaseJobBackend = Depends(get_jobs),
    settings: Settings = Depends(get_app_settings),
) -> MediaService:
    return MediaService(settings, storage, store, jobs)


MediaServiceDependency = Annotated[MediaService, Depends(get_media_service)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]


__all__ = [
    "get_storage",
    "get_record_store",
    "get_jobs",
    "get_app_settings",
    "get_media_service",
    "MediaServiceDependency",
    "AuthDependency",
]
