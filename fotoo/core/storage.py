from __future__ import annotations

import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import StorageError


@dataclass(slots=True)
class PresignedURL:
    url: str
    method: str = "PUT"
    headers: dict[str, str] | None = None


class Storage(ABC):
    """Key-addressed blob store used for originals and derived artefacts."""

    bucket: str

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def download_to_local_file(self, key: str, directory: Path | None = None) -> Path: ...

    @abstractmethod
    def upload_buffer(self, key: str, payload: bytes, content_type: str | None) -> None: ...

    @abstractmethod
    def upload_file(self, key: str, path: Path, content_type: str | None) -> int: ...

    @abstractmethod
    def stream_object(self, key: str) -> BinaryIO: ...

    @abstractmethod
    def delete_object(self, key: str) -> None: ...

    @abstractmethod
    def presign_put(self, key: str, *, content_type: str | None, expires_s: int = 900) -> PresignedURL: ...

    @abstractmethod
    def presign_get(self, key: str, *, expires_s: int = 900) -> PresignedURL: ...

    @staticmethod
    def _local_target(key: str, directory: Path | None) -> Path:
        root = directory or Path(tempfile.gettempdir())
        root.mkdir(parents=True, exist_ok=True)
        suffix = Path(key).suffix
        return root / f"fotoo-{uuid4().hex}{suffix}"


class LocalStorage(Storage):
    """Filesystem-backed storage abstraction suitable for development."""

    def __init__(self, base_path: Path, bucket: str = "local"):
        self.base_path = base_path
        self.bucket = bucket
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        base = self.base_path.resolve()
        path = (base / key).resolve()
        if base != path and base not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def download_to_local_file(self, key: str, directory: Path | None = None) -> Path:
        source = self._resolve(key)
        target = self._local_target(key, directory)
        try:
            shutil.copyfile(source, target)
        except OSError as exc:
            raise StorageError(f"Failed to download {key}: {exc}") from exc
        return target

    def upload_buffer(self, key: str, payload: bytes, content_type: str | None) -> None:
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
        except OSError as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc

    def upload_file(self, key: str, path: Path, content_type: str | None) -> int:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
            return target.stat().st_size
        except OSError as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc

    def stream_object(self, key: str) -> BinaryIO:
        try:
            return self._resolve(key).open("rb")
        except OSError as exc:
            raise StorageError(f"Failed to open {key}: {exc}") from exc

    def delete_object(self, key: str) -> None:
        try:
            self._resolve(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def presign_put(self, key: str, *, content_type: str | None, expires_s: int = 900) -> PresignedURL:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        return PresignedURL(url=target.as_uri(), method="PUT", headers={"Content-Type": content_type or "application/octet-stream"})

    def presign_get(self, key: str, *, expires_s: int = 900) -> PresignedURL:
        return PresignedURL(url=self._resolve(key).as_uri(), method="GET", headers=None)


class S3Storage(Storage):
    """S3-compatible object storage (AWS, MinIO, R2) backed by boto3."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        force_path_style: bool = True,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(s3={"addressing_style": "path" if force_path_style else "auto"}),
        )

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise StorageError(f"Failed to stat {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to stat {key}: {exc}") from exc

    def download_to_local_file(self, key: str, directory: Path | None = None) -> Path:
        target = self._local_target(key, directory)
        try:
            self.client.download_file(self.bucket, key, str(target))
        except (BotoCoreError, ClientError) as exc:
            target.unlink(missing_ok=True)
            raise StorageError(f"Failed to download {key}: {exc}") from exc
        return target

    def upload_buffer(self, key: str, payload: bytes, content_type: str | None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=payload, **extra)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc

    def upload_file(self, key: str, path: Path, content_type: str | None) -> int:
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            self.client.upload_file(str(path), self.bucket, key, ExtraArgs=extra_args)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc
        return path.stat().st_size

    def stream_object(self, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to open {key}: {exc}") from exc
        return response["Body"]

    def delete_object(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def presign_put(self, key: str, *, content_type: str | None, expires_s: int = 900) -> PresignedURL:
        params = {"Bucket": self.bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        url = self.client.generate_presigned_url("put_object", Params=params, ExpiresIn=expires_s)
        headers = {"Content-Type": content_type} if content_type else None
        return PresignedURL(url=url, method="PUT", headers=headers)

    def presign_get(self, key: str, *, expires_s: int = 900) -> PresignedURL:
        url = self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_s,
        )
        return PresignedURL(url=url, method="GET", headers=None)


def get_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "local":
        return LocalStorage(base_path=Path(settings.local_storage_base_path), bucket=settings.s3_bucket)
    if settings.storage_backend == "s3":
        return S3Storage(
            settings.s3_bucket,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key_id=settings.secrets.s3_access_key_id,
            secret_access_key=settings.secrets.s3_secret_access_key,
            force_path_style=settings.s3_force_path_style,
        )
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "Storage",
    "LocalStorage",
    "S3Storage",
    "PresignedURL",
    "get_storage",
]
