from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from fotoo.core.errors import UnsupportedFormat

__all__ = ["FormatCategory", "OutputFormat", "classify", "output_format"]


class FormatCategory(str, enum.Enum):
    heic_like = "heic_like"
    web_image = "web_image"
    quicktime = "quicktime"
    mp4 = "mp4"
    unsupported = "unsupported"


@dataclass(frozen=True, slots=True)
class OutputFormat:
    """Target of the processed artefact for one category."""

    extension: str
    mime_type: str
    needs_conversion: bool
    is_video: bool


_HEIC_KEY = re.compile(r"\.hei[cf]$", re.IGNORECASE)
_WEB_IMAGE_MIME = re.compile(r"^image/(jpeg|jpg|png|webp)$", re.IGNORECASE)
_MOV_KEY = re.compile(r"\.mov$", re.IGNORECASE)
_MP4_KEY = re.compile(r"\.mp4$", re.IGNORECASE)


def classify(mime_type: str | None, storage_key: str | None) -> FormatCategory:
    """Map a declared MIME type and storage key to a processing category.

    Rules are evaluated in order and the first match wins, so a HEIC key with
    a generic MIME type is still treated as HEIC.

    Args:
        mime_type: The MIME type declared by the uploader.
        storage_key: The object key of the original.

    Returns:
        The format category; never raises.
    """
    mime = (mime_type or "").lower()
    key = storage_key or ""

    if "heic" in mime or "heif" in mime or _HEIC_KEY.search(key):
        return FormatCategory.heic_like
    if _WEB_IMAGE_MIME.match(mime):
        return FormatCategory.web_image
    if mime == "video/quicktime" or _MOV_KEY.search(key):
        return FormatCategory.quicktime
    if mime == "video/mp4" or _MP4_KEY.search(key):
        return FormatCategory.mp4
    return FormatCategory.unsupported


def output_format(category: FormatCategory, mime_type: str | None, storage_key: str | None) -> OutputFormat:
    """Return the processed artefact format for an already classified asset.

    Web images keep their own extension and MIME type; everything else is
    normalised to JPEG or MP4.

    Raises:
        UnsupportedFormat: If the category is ``unsupported``.
    """
    if category is FormatCategory.heic_like:
        return OutputFormat("jpg", "image/jpeg", needs_conversion=True, is_video=False)
    if category is FormatCategory.web_image:
        extension = PurePosixPath(storage_key or "").suffix.lstrip(".") or "jpg"
        return OutputFormat(extension, (mime_type or "image/jpeg").lower(), needs_conversion=False, is_video=False)
    if category is FormatCategory.quicktime:
        return OutputFormat("mp4", "video/mp4", needs_conversion=True, is_video=True)
    if category is FormatCategory.mp4:
        return OutputFormat("mp4", "video/mp4", needs_conversion=False, is_video=True)
    raise UnsupportedFormat(mime_type)
