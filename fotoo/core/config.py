from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="FOTOO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for JWT validation.")
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the Fotoo media service."""

    model_config = SettingsConfigDict(
        env_prefix="FOTOO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Fotoo Media API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./fotoo.db",
        description="SQLAlchemy compatible DSN.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for background jobs.",
    )

    storage_backend: Literal["local", "s3"] = Field(default="local", description="Active storage implementation.")
    local_storage_base_path: Path = Field(
        default_factory=lambda: Path("storage"),
        description="Root directory for the local storage backend.",
    )
    s3_bucket: str = Field(default="fotoo-dev", description="Bucket holding originals and derived artefacts.")
    s3_endpoint_url: Optional[str] = Field(default=None, description="Custom endpoint for S3-compatible stores.")
    s3_region: str = Field(default="us-east-1")
    s3_force_path_style: bool = Field(default=True)
    presign_expiry_s: int = Field(default=900, description="Lifetime of presigned upload/download URLs.")
    work_dir: Optional[Path] = Field(
        default=None,
        description="Scratch root for per-job temporary files (defaults to the system temp dir).",
    )

    transcoder_backend: Literal["docker", "local"] = Field(
        default="docker",
        description="docker spawns a disposable container per call; local runs the tools directly.",
    )
    docker_binary: str = Field(default="docker")
    ffmpeg_image: str = Field(default="jrottenberg/ffmpeg:4.4-alpine")
    heic_image: str = Field(default="heic-converter")
    docker_user: Optional[str] = Field(
        default=None,
        description="uid:gid the containers run as; defaults to the current process user.",
    )
    ffmpeg_binary: str = Field(default="ffmpeg")
    ffprobe_binary: str = Field(default="ffprobe")
    heif_convert_binary: str = Field(default="heif-convert")
    thumbnail_width: int = Field(default=512, ge=2)
    video_thumbnail_offset_s: float = Field(default=1.0, ge=0)
    transcode_timeout_s: float = Field(default=1800.0, gt=0)

    max_upload_size_bytes: int = Field(default=2 * 1024 * 1024 * 1024, description="Soft limit for declared uploads.")

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    job_queue_backend: Literal["immediate", "inline", "rq", "pool"] = Field(
        default="pool",
        description="Backend for processing jobs (inline executes inline; rq schedules via Redis; pool runs in-process workers).",
    )
    job_queue_name: str = Field(default="media-processing")
    job_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per job, including the first.")
    job_retry_initial_delay_s: float = Field(default=5.0, ge=0, description="Delay before the first retry.")
    job_retry_backoff_base: float = Field(default=2.0, ge=1, description="Backoff multiplier between retries.")
    job_timeout_s: int = Field(default=3600, description="Hard timeout for a single job on the rq backend.")
    worker_concurrency: int = Field(default=2, ge=1, description="Long-lived workers in the in-process pool.")
    job_queue_max_size: int = Field(default=100, ge=1, description="Bound of the in-process job queue.")
    processing_lease_s: int = Field(
        default=3600,
        ge=0,
        description="Age after which a processing claim is considered stale; 0 never expires claims.",
    )

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def normalized_job_backend(self) -> str:
        if self.job_queue_backend == "inline":
            return "immediate"
        return self.job_queue_backend

    def retry_intervals(self) -> list[int]:
        """Seconds to wait before each retry, doubling from the initial delay."""
        return [
            int(self.job_retry_initial_delay_s * self.job_retry_backoff_base**attempt)
            for attempt in range(self.job_max_attempts - 1)
        ]


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "FOTOO_ENV": "FOTOO_ENVIRONMENT",
        "FOTOO_DB_URL": "FOTOO_DATABASE_URL",
        "FOTOO_JOB_BACKEND": "FOTOO_JOB_QUEUE_BACKEND",
        "FOTOO_TRANSCODER": "FOTOO_TRANSCODER_BACKEND",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if settings.environment == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
