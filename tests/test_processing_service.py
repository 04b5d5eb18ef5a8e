from __future__ import annotations

import dataclasses
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fotoo.core.config import get_settings
from fotoo.core.errors import StorageError
from fotoo.core.storage import LocalStorage
from fotoo.db.models import AssetStatus
from fotoo.media.transcoder import LocalTranscoder

from tests.conftest import FFMPEG_AVAILABLE

CAPTURED = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)


async def _upload(runtime, key: str, mime_type: str, payload: bytes = b"original-bytes", *, store_blob: bool = True):
    if store_blob:
        runtime.storage.upload_buffer(key, payload, mime_type)
    return await runtime.store.create(
        owner_id="u1",
        bucket=runtime.storage.bucket,
        key=key,
        mime_type=mime_type,
        size=len(payload),
        captured_at=CAPTURED,
    )


def test_web_image_is_copied_without_conversion(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.png", "image/png", b"png-bytes")
        processed = await runtime.service.process_asset(asset.id)
        return processed, runtime.storage.download_to_local_file(processed.processed_key, runtime.settings.work_dir)

    processed, copy = pipeline(scenario, transcoder=fake_transcoder)

    assert processed.status is AssetStatus.processed
    assert processed.error is None
    assert re.fullmatch(r"u1/processed/2024/01/01/[0-9a-f-]{36}_abc_photo\.png", processed.processed_key)
    assert processed.processed_mime_type == "image/png"
    assert processed.processed_size == len(b"png-bytes")
    assert copy.read_bytes() == b"png-bytes"
    assert fake_transcoder.operations() == ["extract_image_thumbnail"]


def test_heic_is_converted_and_thumbnailed_from_the_jpeg(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        return await runtime.service.process_asset(asset.id)

    processed = pipeline(scenario, transcoder=fake_transcoder)

    assert processed.status is AssetStatus.processed
    assert re.fullmatch(r"u1/processed/2024/01/01/[^/]+_IMG_0001\.jpg", processed.processed_key)
    assert processed.processed_mime_type == "image/jpeg"
    assert processed.processed_size == len(b"jpeg:original-bytes")
    assert fake_transcoder.operations() == ["convert_heic_to_jpeg", "extract_image_thumbnail"]
    converted = fake_transcoder.calls[0][2]
    assert fake_transcoder.calls[1][1] == converted
    assert processed.thumbnail_key.endswith("_abc_IMG_0001.jpg")
    assert processed.thumbnail_key != processed.processed_key
    assert processed.thumbnail_mime_type == "image/jpeg"
    assert (processed.thumbnail_width, processed.thumbnail_height) == (512, 384)
    assert processed.thumbnail_size == len(b"thumb")


def test_quicktime_is_converted_and_thumbnailed_from_the_mp4(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_clip.MOV", "video/quicktime")
        return await runtime.service.process_asset(asset.id)

    processed = pipeline(scenario, transcoder=fake_transcoder)

    assert processed.status is AssetStatus.processed
    assert processed.processed_key.endswith("_abc_clip.mp4")
    assert processed.processed_mime_type == "video/mp4"
    assert fake_transcoder.operations() == ["convert_mov_to_mp4", "probe_duration", "extract_video_thumbnail"]
    converted = fake_transcoder.calls[0][2]
    operation, source, _, offset, width = fake_transcoder.calls[2]
    assert source == converted
    assert offset == 1.0
    assert width == 512


def test_short_video_thumbnail_uses_half_the_duration(pipeline, fake_transcoder):
    fake_transcoder.duration = 0.5

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_clip.mp4", "video/mp4")
        return await runtime.service.process_asset(asset.id)

    processed = pipeline(scenario, transcoder=fake_transcoder)

    assert processed.status is AssetStatus.processed
    assert "convert_mov_to_mp4" not in fake_transcoder.operations()
    assert fake_transcoder.calls[-1][3] == pytest.approx(0.25)


def test_unsupported_format_marks_failed(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_doc.pdf", "application/pdf")
        return await runtime.service.process_asset(asset.id)

    failed = pipeline(scenario, transcoder=fake_transcoder)

    assert failed.status is AssetStatus.failed
    assert "application/pdf" in failed.error
    assert failed.processed_key is None
    assert failed.thumbnail_key is None
    assert fake_transcoder.calls == []


def test_conversion_failure_marks_failed_with_message(pipeline, fake_transcoder):
    fake_transcoder.fail_on.add("convert_heic_to_jpeg")

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        return await runtime.service.process_asset(asset.id)

    failed = pipeline(scenario, transcoder=fake_transcoder)

    assert failed.status is AssetStatus.failed
    assert failed.error == "convert_heic_to_jpeg failed"
    assert failed.processed_key is None


def test_thumbnail_failure_still_processes(pipeline, fake_transcoder):
    fake_transcoder.fail_on.add("extract_image_thumbnail")

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.jpg", "image/jpeg")
        return await runtime.service.process_asset(asset.id)

    processed = pipeline(scenario, transcoder=fake_transcoder)

    assert processed.status is AssetStatus.processed
    assert processed.processed_key is not None
    assert processed.thumbnail_key is None
    assert processed.thumbnail_width is None


def test_missing_asset_is_a_no_op(pipeline, fake_transcoder):
    async def scenario(runtime):
        return await runtime.service.process_asset("does-not-exist")

    assert pipeline(scenario, transcoder=fake_transcoder) is None
    assert fake_transcoder.calls == []


def test_asset_already_processing_is_left_untouched(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.jpg", "image/jpeg")
        claimed = await runtime.store.claim(asset.id, lease_s=3600)
        result = await runtime.service.process_asset(asset.id)
        return claimed, result, await runtime.store.load(asset.id)

    claimed, result, after = pipeline(scenario, transcoder=fake_transcoder)

    assert result is None
    assert after == claimed
    assert after.status is AssetStatus.processing
    assert fake_transcoder.calls == []


def test_stale_processing_claim_is_taken_over(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.jpg", "image/jpeg")
        abandoned = dataclasses.replace(
            asset,
            status=AssetStatus.processing,
            processing_started_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        await runtime.store.save(abandoned)
        return await runtime.service.process_asset(asset.id)

    processed = pipeline(scenario, transcoder=fake_transcoder)

    assert processed is not None
    assert processed.status is AssetStatus.processed


def test_failed_asset_can_be_retried_with_fresh_keys(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        fake_transcoder.fail_on.add("convert_heic_to_jpeg")
        failed = await runtime.service.process_asset(asset.id)
        fake_transcoder.fail_on.clear()
        first = await runtime.service.process_asset(asset.id)
        second = await runtime.service.process_asset(asset.id)
        return failed, first, second

    failed, first, second = pipeline(scenario, transcoder=fake_transcoder)

    assert failed.status is AssetStatus.failed
    assert first.status is AssetStatus.processed
    assert first.error is None
    assert second.status is AssetStatus.processed
    assert first.processed_key != second.processed_key
    assert first.thumbnail_key != second.thumbnail_key


def test_storage_error_with_attempts_left_releases_the_claim(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.jpg", "image/jpeg", store_blob=False)
        with pytest.raises(StorageError):
            await runtime.service.process_asset(asset.id, final_attempt=False)
        return await runtime.store.load(asset.id)

    after = pipeline(scenario, transcoder=fake_transcoder)

    assert after.status is AssetStatus.pending
    assert after.error is None
    assert after.processing_started_at is None


def test_storage_error_on_final_attempt_marks_failed(pipeline, fake_transcoder):
    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_photo.jpg", "image/jpeg", store_blob=False)
        return await runtime.service.process_asset(asset.id, final_attempt=True)

    failed = pipeline(scenario, transcoder=fake_transcoder)

    assert failed.status is AssetStatus.failed
    assert "abc_photo.jpg" in failed.error


class ThumbnailOutageStorage(LocalStorage):
    """Local storage whose buffer uploads can be switched off mid-test."""

    def __init__(self, base_path: Path, bucket: str):
        super().__init__(base_path, bucket)
        self.uploaded_files: list[str] = []
        self.buffers_down = False

    def upload_file(self, key: str, path: Path, content_type: str | None) -> int:
        size = super().upload_file(key, path, content_type)
        self.uploaded_files.append(key)
        return size

    def upload_buffer(self, key: str, payload: bytes, content_type: str | None) -> None:
        if self.buffers_down:
            raise StorageError(f"Failed to upload {key}: bucket unavailable")
        super().upload_buffer(key, payload, content_type)


def _outage_storage() -> ThumbnailOutageStorage:
    settings = get_settings()
    return ThumbnailOutageStorage(Path(settings.local_storage_base_path), settings.s3_bucket)


def test_failed_reprocess_drops_previous_keys_and_partial_uploads(pipeline, fake_transcoder):
    storage = _outage_storage()

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        processed = await runtime.service.process_asset(asset.id)
        storage.buffers_down = True
        failed = await runtime.service.process_asset(asset.id, final_attempt=True)
        return processed, failed

    processed, failed = pipeline(scenario, transcoder=fake_transcoder, storage=storage)

    assert processed.status is AssetStatus.processed
    assert failed.status is AssetStatus.failed
    assert "bucket unavailable" in failed.error
    assert failed.processed_key is None
    assert failed.processed_size is None
    assert failed.thumbnail_key is None
    assert failed.thumbnail_width is None
    first_key, partial_key = storage.uploaded_files
    assert first_key == processed.processed_key
    assert not storage.exists(partial_key)


def test_retried_storage_error_discards_partial_uploads(pipeline, fake_transcoder):
    storage = _outage_storage()

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        storage.buffers_down = True
        with pytest.raises(StorageError):
            await runtime.service.process_asset(asset.id, final_attempt=False)
        return await runtime.store.load(asset.id)

    after = pipeline(scenario, transcoder=fake_transcoder, storage=storage)

    assert after.status is AssetStatus.pending
    assert after.processed_key is None
    (partial_key,) = storage.uploaded_files
    assert not storage.exists(partial_key)


def test_job_scratch_files_are_removed(pipeline, fake_transcoder):
    async def scenario(runtime):
        ok = await _upload(runtime, "u1/2024/01/01/abc_IMG_0001.heic", "image/heic")
        await runtime.service.process_asset(ok.id)
        fake_transcoder.fail_on.add("extract_image_thumbnail")
        fake_transcoder.fail_on.add("convert_mov_to_mp4")
        broken = await _upload(runtime, "u1/2024/01/01/abc_clip.mov", "video/quicktime")
        await runtime.service.process_asset(broken.id)
        return runtime.settings.work_dir

    work_dir = pipeline(scenario, transcoder=fake_transcoder)

    assert list(work_dir.iterdir()) == []


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg is not installed")
def test_mp4_copy_path_with_real_ffmpeg(pipeline, generated_video_file):
    payload = generated_video_file.read_bytes()

    async def scenario(runtime):
        asset = await _upload(runtime, "u1/2024/01/01/abc_clip.mp4", "video/mp4", payload)
        processed = await runtime.service.process_asset(asset.id)
        thumbnail = runtime.storage.download_to_local_file(processed.thumbnail_key, runtime.settings.work_dir)
        return processed, thumbnail

    processed, thumbnail = pipeline(scenario, transcoder=LocalTranscoder())

    assert processed.status is AssetStatus.processed
    assert processed.processed_size == len(payload)
    assert processed.thumbnail_mime_type == "image/jpeg"
    assert (processed.thumbnail_width, processed.thumbnail_height) == (512, 288)
    assert thumbnail.read_bytes()[:2] == b"\xff\xd8"
