import asyncio
import shutil
import subprocess
from pathlib import Path
from types import SimpleNamespace
from urllib.parse import unquote, urlparse

import jwt
import pytest
from fastapi.testclient import TestClient

from fotoo.core.config import get_settings
from fotoo.core.db import Base, create_engine, create_schema, create_session_factory
from fotoo.core.errors import ConversionError
from fotoo.core.jobs import get_job_backend
from fotoo.core.storage import get_storage
from fotoo.db.repository import AssetRecordStore
from fotoo.main import create_app
from fotoo.workers.tasks import build_processing_service

FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default Fotoo environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        get_job_backend.cache_clear()
        yield
        get_job_backend.cache_clear()
        get_settings.cache_clear()
        return
    db_path = tmp_path / "fotoo_test.db"
    storage_root = tmp_path / "storage"

    monkeypatch.setenv("FOTOO_ENV", "test")
    monkeypatch.setenv("FOTOO_LOG_LEVEL", "debug")
    monkeypatch.setenv("FOTOO_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("FOTOO_STORAGE_BACKEND", "local")
    monkeypatch.setenv("FOTOO_LOCAL_STORAGE_BASE_PATH", str(storage_root))
    monkeypatch.setenv("FOTOO_S3_BUCKET", "fotoo-test")
    monkeypatch.setenv("FOTOO_JOB_BACKEND", "inline")
    monkeypatch.setenv("FOTOO_TRANSCODER", "local")
    monkeypatch.setenv("FOTOO_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("FOTOO_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("FOTOO_JWT_SECRET", "test-secret")
    monkeypatch.setenv("FOTOO_JWT_ISSUER", "fotoo-test")
    monkeypatch.setenv("FOTOO_JWT_AUDIENCE", "fotoo")

    get_settings.cache_clear()
    get_job_backend.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    async def _setup() -> None:
        await create_schema(engine)
        await engine.dispose()

    asyncio.run(_setup())

    yield

    async def _teardown() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(_teardown())
    get_job_backend.cache_clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


def build_token(user_id: str | None, *, scopes: list[str] | None = None) -> str:
    payload: dict[str, object] = {"iss": "fotoo-test", "aud": "fotoo"}
    if user_id:
        payload["sub"] = user_id
    if scopes:
        payload["scopes"] = scopes
    return jwt.encode(payload, "test-secret", algorithm="HS256")


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user-1')}"}


@pytest.fixture()
def other_user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user-2')}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('admin-1', scopes=['admin'])}"}


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError("Unsupported URI in tests")
    return Path(unquote(parsed.path))


class FakeTranscoder:
    """In-memory stand-in for the transcoder backends.

    Writes recognisable bytes instead of launching tools and records every
    call. Operations listed in ``fail_on`` raise ``ConversionError``.
    """

    name = "fake"

    def __init__(self, *, duration: float | None = 10.0, dimensions: tuple[int, int] = (512, 384)):
        self.duration = duration
        self.dimensions = dimensions
        self.fail_on: set[str] = set()
        self.calls: list[tuple] = []

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if operation in self.fail_on:
            raise ConversionError(f"{operation} failed", stderr="simulated failure")

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]

    def convert_heic_to_jpeg(self, source: Path, target: Path) -> None:
        self._record("convert_heic_to_jpeg", source, target)
        target.write_bytes(b"jpeg:" + source.read_bytes())

    def convert_mov_to_mp4(self, source: Path, target: Path) -> None:
        self._record("convert_mov_to_mp4", source, target)
        target.write_bytes(b"mp4:" + source.read_bytes())

    def extract_image_thumbnail(self, source: Path, target: Path, width: int = 512) -> tuple[int, int]:
        self._record("extract_image_thumbnail", source, target, width)
        target.write_bytes(b"thumb")
        return self.dimensions

    def extract_video_thumbnail(self, source: Path, target: Path, at_seconds: float, width: int = 512) -> tuple[int, int]:
        self._record("extract_video_thumbnail", source, target, at_seconds, width)
        target.write_bytes(b"video-thumb")
        return self.dimensions

    def probe_duration(self, source: Path) -> float | None:
        self._record("probe_duration", source)
        return self.duration


@pytest.fixture()
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture()
def pipeline(configure_environment):
    """Run an async scenario against a fresh engine, store and processing service."""

    def run(scenario, *, transcoder=None, storage=None):
        async def _main():
            settings = get_settings()
            engine = create_engine(settings)
            try:
                factory = create_session_factory(engine)
                blob_store = storage or get_storage(settings)
                runtime = SimpleNamespace(
                    settings=settings,
                    storage=blob_store,
                    store=AssetRecordStore(factory),
                    service=build_processing_service(settings, factory, blob_store, transcoder),
                )
                return await scenario(runtime)
            finally:
                await engine.dispose()

        return asyncio.run(_main())

    return run


@pytest.fixture(scope="session")
def generated_video_file(tmp_path_factory) -> Path:
    """
    Generates a small, valid MP4 video file for testing in a temporary directory.
    """
    if not FFMPEG_AVAILABLE:
        pytest.skip("ffmpeg is not installed")
    video_path = tmp_path_factory.mktemp("data") / "test_video.mp4"

    # Generate a 2-second video with a solid color
    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "color=c=black:s=128x72:r=30",
        "-t", "2",
        "-pix_fmt", "yuv420p",
        str(video_path)
    ]
    subprocess.run(command, check=True, capture_output=True)
    return video_path


@pytest.fixture(scope="session")
def generated_quicktime_file(tmp_path_factory) -> Path:
    if not FFMPEG_AVAILABLE:
        pytest.skip("ffmpeg is not installed")
    video_path = tmp_path_factory.mktemp("data") / "IMG_0002.MOV"
    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "testsrc=s=160x90:r=25",
        "-t", "1",
        "-c:v", "mjpeg",
        str(video_path)
    ]
    subprocess.run(command, check=True, capture_output=True)
    return video_path
