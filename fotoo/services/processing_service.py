from __future__ import annotations

import asyncio
import dataclasses
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from fotoo.core.config import Settings
from fotoo.core.errors import AlreadyInProgress, AssetNotFound, ConversionError, StorageError
from fotoo.core.logging import get_logger
from fotoo.core.storage import Storage
from fotoo.db.models import AssetStatus
from fotoo.db.repository import AssetRecord, AssetRecordStore
from fotoo.media.classifier import OutputFormat, classify, output_format
from fotoo.media.keys import asset_timestamp, build_processed_key
from fotoo.media.transcoder import TranscoderBackend

THUMBNAIL_MIME_TYPE = "image/jpeg"


@dataclass(slots=True)
class _Workspace:
    """Private scratch directory of one job, with every file it may create."""

    root: Path
    files: list[Path] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)

    def path(self, prefix: str, extension: str) -> Path:
        candidate = self.root / f"{prefix}-{uuid4().hex}.{extension}"
        self.files.append(candidate)
        return candidate

    def track(self, path: Path) -> Path:
        self.files.append(path)
        return path


def _without_derivatives(asset: AssetRecord) -> AssetRecord:
    return dataclasses.replace(
        asset,
        processed_key=None,
        processed_mime_type=None,
        processed_size=None,
        thumbnail_key=None,
        thumbnail_mime_type=None,
        thumbnail_size=None,
        thumbnail_width=None,
        thumbnail_height=None,
    )


class ProcessingService:
    """Turns one uploaded original into its web-playable derivatives.

    Owns the asset lifecycle ``pending -> processing -> processed | failed``
    (plus ``failed -> processing`` on retry).
    """

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        store: AssetRecordStore,
        transcoder: TranscoderBackend,
    ):
        self.settings = settings
        self.storage = storage
        self.store = store
        self.transcoder = transcoder
        self.logger = get_logger(component="processing_service")

    async def process_asset(self, asset_id: str, *, final_attempt: bool = True) -> AssetRecord | None:
        """Run the full pipeline for ``asset_id``.

        Returns the persisted record, or ``None`` when the job was a no-op
        (asset deleted, or another attempt holds the processing claim).

        Raises:
            StorageError: When the blob store fails and the queue still has
                attempts left; the claim is released first so the redelivery
                is not blocked by the in-progress guard.
        """
        logger = self.logger.bind(asset_id=asset_id)
        try:
            previous, asset = await self._claim(asset_id)
        except AssetNotFound:
            logger.info("asset_not_found")
            return None
        except AlreadyInProgress:
            logger.info("asset_already_processing")
            return None

        logger.info("asset_processing_started", mime_type=asset.mime_type, key=asset.key)
        workspace = _Workspace(Path(tempfile.mkdtemp(prefix="fotoo-job-", dir=self._scratch_root())))
        # Derived keys are fresh on every attempt; stale ones are never reused.
        asset = _without_derivatives(asset)
        try:
            asset = await self._run_pipeline(asset, workspace)
        except StorageError as exc:
            if not final_attempt:
                logger.warning("asset_processing_storage_error", error=exc.message, retrying=True)
                await self._discard_uploads(workspace)
                await self.store.release(previous)
                raise
            logger.error("asset_processing_failed", error=exc.message)
            await self._discard_uploads(workspace)
            return await self._mark_failed(asset, exc.message)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            logger.error("asset_processing_failed", error=message, error_type=exc.__class__.__name__)
            await self._discard_uploads(workspace)
            return await self._mark_failed(asset, message)
        finally:
            self._cleanup(workspace)

        asset.status = AssetStatus.processed
        asset.error = None
        saved = await self.store.save(asset)
        logger.info(
            "asset_processing_succeeded",
            processed_key=saved.processed_key,
            thumbnail_key=saved.thumbnail_key,
        )
        return saved

    async def _claim(self, asset_id: str) -> tuple[AssetRecord, AssetRecord]:
        previous = await self.store.load(asset_id)
        if previous is None:
            raise AssetNotFound(asset_id)
        if previous.status == AssetStatus.processing and self.settings.processing_lease_s <= 0:
            raise AlreadyInProgress(asset_id)
        claimed = await self.store.claim(asset_id, lease_s=self.settings.processing_lease_s)
        if claimed is None:
            if await self.store.load(asset_id) is None:
                raise AssetNotFound(asset_id)
            raise AlreadyInProgress(asset_id)
        return previous, claimed

    async def _run_pipeline(self, asset: AssetRecord, workspace: _Workspace) -> AssetRecord:
        original = workspace.track(
            await asyncio.to_thread(self.storage.download_to_local_file, asset.key, workspace.root)
        )

        category = classify(asset.mime_type, asset.key)
        target = output_format(category, asset.mime_type, asset.key)
        self.logger.debug("asset_classified", asset_id=asset.id, category=category.value)

        if target.needs_conversion:
            processed = workspace.path("out", target.extension)
            if target.is_video:
                await asyncio.to_thread(self.transcoder.convert_mov_to_mp4, original, processed)
            else:
                await asyncio.to_thread(self.transcoder.convert_heic_to_jpeg, original, processed)
        else:
            processed = original

        asset = await self._upload_processed(asset, processed, target, workspace)
        # Thumbnails come from the converted output; HEIC and some MOV files
        # cannot be decoded or seeked by the thumbnail tool.
        return await self._derive_thumbnail(asset, processed, target, workspace)

    async def _upload_processed(
        self,
        asset: AssetRecord,
        processed: Path,
        target: OutputFormat,
        workspace: _Workspace,
    ) -> AssetRecord:
        key = self._derived_key(asset, target.extension)
        size = await asyncio.to_thread(self.storage.upload_file, key, processed, target.mime_type)
        workspace.uploaded.append(key)
        return dataclasses.replace(
            asset,
            processed_key=key,
            processed_mime_type=target.mime_type,
            processed_size=size,
        )

    async def _derive_thumbnail(
        self,
        asset: AssetRecord,
        source: Path,
        target: OutputFormat,
        workspace: _Workspace,
    ) -> AssetRecord:
        thumbnail = workspace.path("thumb", "jpg")
        width = self.settings.thumbnail_width
        try:
            if target.is_video:
                offset = await self._video_thumbnail_offset(source)
                dimensions = await asyncio.to_thread(
                    self.transcoder.extract_video_thumbnail, source, thumbnail, offset, width
                )
            else:
                dimensions = await asyncio.to_thread(
                    self.transcoder.extract_image_thumbnail, source, thumbnail, width
                )
        except ConversionError as exc:
            self.logger.warning(
                "thumbnail_extraction_failed",
                asset_id=asset.id,
                error=exc.message,
                stderr=exc.stderr,
            )
            return asset

        payload = thumbnail.read_bytes()
        key = self._derived_key(asset, "jpg")
        await asyncio.to_thread(self.storage.upload_buffer, key, payload, THUMBNAIL_MIME_TYPE)
        workspace.uploaded.append(key)
        return dataclasses.replace(
            asset,
            thumbnail_key=key,
            thumbnail_mime_type=THUMBNAIL_MIME_TYPE,
            thumbnail_size=len(payload),
            thumbnail_width=dimensions[0],
            thumbnail_height=dimensions[1],
        )

    async def _video_thumbnail_offset(self, source: Path) -> float:
        offset = self.settings.video_thumbnail_offset_s
        try:
            duration = await asyncio.to_thread(self.transcoder.probe_duration, source)
        except ConversionError:
            duration = None
        if duration is not None and duration <= offset:
            return max(duration / 2, 0.0)
        return offset

    def _derived_key(self, asset: AssetRecord, extension: str) -> str:
        return build_processed_key(
            asset.owner_id,
            asset_timestamp(asset.captured_at, asset.created_at),
            asset.key,
            extension,
        )

    async def _discard_uploads(self, workspace: _Workspace) -> None:
        """Delete blobs written by an attempt that did not complete."""
        for key in workspace.uploaded:
            try:
                await asyncio.to_thread(self.storage.delete_object, key)
            except StorageError as exc:
                self.logger.warning("derived_blob_cleanup_failed", key=key, error=exc.message)
        workspace.uploaded.clear()

    async def _mark_failed(self, asset: AssetRecord, message: str) -> AssetRecord:
        failed = dataclasses.replace(asset, status=AssetStatus.failed, error=message)
        return await self.store.save(failed)

    def _scratch_root(self) -> str | None:
        if self.settings.work_dir is None:
            return None
        self.settings.work_dir.mkdir(parents=True, exist_ok=True)
        return str(self.settings.work_dir)

    def _cleanup(self, workspace: _Workspace) -> None:
        for path in workspace.files:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                self.logger.warning("temp_file_cleanup_failed", path=str(path), error=str(exc))
        # Also sweeps partial downloads that never made it into the file list.
        shutil.rmtree(workspace.root, ignore_errors=True)


__all__ = ["ProcessingService", "THUMBNAIL_MIME_TYPE"]
