"""Error types raised by the image store.

Every error carries the message returned to API clients and the HTTP
status it maps to, so the exception handlers in ``main.py`` stay generic.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ImageStoreError(Exception):
    """Base class for all image store errors."""

    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message}


class InputError(ImageStoreError):
    """A required field is missing or malformed."""

    http_status = 400


class InvalidIdentifierError(InputError):
    def __init__(self, identifier: str) -> None:
        super().__init__("Invalid image identifier.")
        self.identifier = identifier


class InvalidDrawingDataError(InputError):
    def __init__(self, message: str = "drawingData must be a base64 encoded image.") -> None:
        super().__init__(message)


class ImageNotFoundError(ImageStoreError):
    """No blob exists for the requested identifier."""

    http_status = 404

    def __init__(self, identifier: str) -> None:
        super().__init__("Image not found")
        self.identifier = identifier


class EmptyCatalogError(ImageStoreError):
    """The store holds no images, or none with a recognized extension."""

    http_status = 404


class ProcessingError(ImageStoreError):
    """Decoding, compositing or writing failed.

    The underlying exception is kept on ``cause`` and reported to the
    client as ``details``.
    """

    http_status = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause

    @property
    def details(self) -> str:
        if self.cause is None:
            return self.message
        return str(self.cause) or type(self.cause).__name__

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message, "details": self.details}


class ImageDecodeError(ProcessingError):
    """Stored bytes are not a raster image Pillow can read."""


class DedupConflictError(ProcessingError):
    """A digest is already bound to a different identifier."""

    def __init__(self, digest: str, existing: str, requested: str) -> None:
        super().__init__(
            f"Digest {digest} is already bound to {existing}, refusing to rebind to {requested}"
        )
        self.digest = digest
        self.existing = existing
        self.requested = requested


__all__ = [
    "ImageStoreError",
    "InputError",
    "InvalidIdentifierError",
    "InvalidDrawingDataError",
    "ImageNotFoundError",
    "EmptyCatalogError",
    "ProcessingError",
    "ImageDecodeError",
    "DedupConflictError",
]
