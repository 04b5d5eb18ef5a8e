from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional
from uuid import uuid4

__all__ = [
    "asset_timestamp",
    "build_processed_key",
    "build_upload_key",
    "sanitize_filename",
    "strip_extension",
]

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def _as_utc(value: datetime) -> datetime:
    # Naive values come back from sqlite; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _date_prefix(value: datetime) -> str:
    stamp = _as_utc(value)
    return f"{stamp.year}/{stamp.month:02d}/{stamp.day:02d}"


def asset_timestamp(captured_at: Optional[datetime], created_at: datetime) -> datetime:
    """Return the capture time, falling back to the record creation time."""
    return captured_at or created_at


def strip_extension(key: str) -> str:
    """Return the basename of ``key`` without its final extension."""
    name = PurePosixPath(key).name
    stem, dot, _ = name.rpartition(".")
    return stem if dot and stem else name


def sanitize_filename(filename: str) -> str:
    """Replace characters outside the storage key charset with ``_``."""
    return _UNSAFE_KEY_CHARS.sub("_", filename)


def build_processed_key(
    owner_id: str,
    timestamp: datetime,
    original_key: str,
    extension: str,
    *,
    token: Optional[str] = None,
) -> str:
    """Build the object key for a derived artefact.

    Args:
        owner_id: The owning user identifier.
        timestamp: Capture (or creation) time; UTC components are used.
        original_key: Key or filename of the original upload.
        extension: Extension of the derived artefact, without the dot.
        token: Unique token; a fresh uuid4 is used when omitted.

    Returns:
        ``{owner}/processed/{YYYY}/{MM}/{DD}/{token}_{basename}.{extension}``
    """
    unique = token or str(uuid4())
    return f"{owner_id}/processed/{_date_prefix(timestamp)}/{unique}_{strip_extension(original_key)}.{extension}"


def build_upload_key(owner_id: str, filename: str, timestamp: datetime, *, token: Optional[str] = None) -> str:
    """Build the object key an original is uploaded under."""
    unique = token or str(uuid4())
    return f"{owner_id}/{_date_prefix(timestamp)}/{unique}_{sanitize_filename(filename)}"
