from __future__ import annotations


class ProcessingError(Exception):
    """Base class for failures raised while handling a single asset."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class AssetNotFound(ProcessingError):
    """The asset referenced by a job no longer exists."""

    def __init__(self, asset_id: str):
        self.asset_id = asset_id
        super().__init__(f"Asset {asset_id} not found.")


class AlreadyInProgress(ProcessingError):
    """Another attempt currently holds the processing claim for the asset."""

    def __init__(self, asset_id: str):
        self.asset_id = asset_id
        super().__init__(f"Asset {asset_id} is already being processed.")


class UnsupportedFormat(ProcessingError):
    """The declared MIME type and key match no known media category."""

    def __init__(self, mime_type: str | None):
        self.mime_type = mime_type
        super().__init__(f"Unsupported mimeType for processing: {mime_type}")


class ConversionError(ProcessingError):
    """A transcoder subprocess failed, timed out, or produced unusable output."""

    def __init__(self, message: str, *, stderr: str | None = None):
        self.stderr = stderr
        super().__init__(message)


class StorageError(ProcessingError):
    """The blob store could not be reached or refused the operation."""


__all__ = [
    "ProcessingError",
    "AssetNotFound",
    "AlreadyInProgress",
    "UnsupportedFormat",
    "ConversionError",
    "StorageError",
]
