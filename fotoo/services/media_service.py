from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, BinaryIO

from fotoo.core.config import Settings
from fotoo.core.errors import AssetNotFound, StorageError
from fotoo.core.jobs import BaseJobBackend
from fotoo.core.logging import get_logger
from fotoo.core.storage import PresignedURL, Storage
from fotoo.db.repository import AssetRecord, AssetRecordStore
from fotoo.media.keys import build_upload_key


class MediaService:
    """Owner-scoped asset operations behind the HTTP API."""

    def __init__(self, settings: Settings, storage: Storage, store: AssetRecordStore, jobs: BaseJobBackend):
        self.settings = settings
        self.storage = storage
        self.store = store
        self.jobs = jobs
        self.logger = get_logger(component="media_service")

    async def create_upload_slot(
        self,
        *,
        owner_id: str,
        filename: str,
        mime_type: str,
        size: int,
        captured_at: datetime | None = None,
    ) -> tuple[AssetRecord, PresignedURL]:
        key = build_upload_key(owner_id, filename, captured_at or datetime.now(timezone.utc))
        asset = await self.store.create(
            owner_id=owner_id,
            bucket=self.storage.bucket,
            key=key,
            mime_type=mime_type,
            size=size,
            captured_at=captured_at,
        )
        presigned = self.storage.presign_put(key, content_type=mime_type, expires_s=self.settings.presign_expiry_s)
        self.logger.info("upload_slot_created", asset_id=asset.id, owner_id=owner_id, key=key)
        return asset, presigned

    async def get_asset(self, asset_id: str, owner_id: str) -> AssetRecord | None:
        asset = await self.store.load(asset_id)
        if asset is None or asset.owner_id != owner_id:
            return None
        return asset

    async def list_assets(self, owner_id: str, *, limit: int = 50) -> list[AssetRecord]:
        return await self.store.list_for_owner(owner_id, limit=limit)

    async def enqueue_processing(self, asset_id: str, owner_id: str) -> None:
        """Queue a processing job; safe to call repeatedly for the same asset."""
        asset = await self.get_asset(asset_id, owner_id)
        if asset is None:
            raise AssetNotFound(asset_id)
        await self.jobs.enqueue(asset.id)
        self.logger.info("asset_processing_enqueued", asset_id=asset.id, status=asset.status.value)

    async def get_download_url(self, asset_id: str, owner_id: str) -> PresignedURL | None:
        asset = await self.get_asset(asset_id, owner_id)
        if asset is None or not asset.processed_key:
            return None
        return self.storage.presign_get(asset.processed_key, expires_s=self.settings.presign_expiry_s)

    async def open_thumbnail(self, asset_id: str, owner_id: str) -> tuple[BinaryIO, str] | None:
        """Return a readable stream and content type for the asset's preview image.

        Images without a stored thumbnail fall back to the processed image;
        videos have no fallback.
        """
        asset = await self.get_asset(asset_id, owner_id)
        if asset is None or not asset.processed_mime_type:
            return None
        if asset.thumbnail_key:
            stream = await asyncio.to_thread(self.storage.stream_object, asset.thumbnail_key)
            return stream, asset.thumbnail_mime_type or "image/jpeg"
        if asset.processed_mime_type.startswith("image/") and asset.processed_key:
            stream = await asyncio.to_thread(self.storage.stream_object, asset.processed_key)
            return stream, asset.processed_mime_type
        return None

    async def delete_asset(self, asset_id: str, owner_id: str) -> bool:
        """Delete the record together with the original and every derived blob."""
        asset = await self.get_asset(asset_id, owner_id)
        if asset is None:
            return False
        for key in (asset.key, asset.processed_key, asset.thumbnail_key):
            if not key:
                continue
            try:
                await asyncio.to_thread(self.storage.delete_object, key)
            except StorageError as exc:
                self.logger.warning("asset_blob_delete_failed", asset_id=asset.id, key=key, error=exc.message)
        deleted = await self.store.delete(asset.id)
        self.logger.info("asset_deleted", asset_id=asset.id)
        return deleted


def serialize_asset(asset: AssetRecord) -> dict[str, Any]:
    return {
        "id": asset.id,
        "owner_id": asset.owner_id,
        "bucket": asset.bucket,
        "key": asset.key,
        "mime_type": asset.mime_type,
        "size": asset.size,
        "captured_at": asset.captured_at,
        "status": asset.status.value,
        "error": asset.error,
        "processed_key": asset.processed_key,
        "processed_mime_type": asset.processed_mime_type,
        "processed_size": asset.processed_size,
        "thumbnail_key": asset.thumbnail_key,
        "thumbnail_mime_type": asset.thumbnail_mime_type,
        "thumbnail_size": asset.thumbnail_size,
        "thumbnail_width": asset.thumbnail_width,
        "thumbnail_height": asset.thumbnail_height,
        "created_at": asset.created_at,
        "updated_at": asset.updated_at,
    }


__all__ = ["MediaService", "serialize_asset"]
