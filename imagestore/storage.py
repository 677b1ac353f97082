"""Filesystem storage backend for image blobs.

Images live in a single flat directory, one file per identifier. The
identifier is the file name, so it must be filesystem safe: no path
separators, no ``..`` and no leading dot. Names starting with a dot are
reserved for the store's own bookkeeping:

    <root>/<identifier>                  current content of an image
    <root>/.<identifier>.<random>.tmp    in-flight replacement
    <root>/.staging/<random>-<name>      uploads waiting to be fingerprinted

Content is only ever made canonical with a single ``os.replace`` of a
fully written and fsynced file, so readers see either the old bytes or
the new bytes of an image and never a truncated file.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Iterator, Optional, Union

from PIL import Image, UnidentifiedImageError

from .errors import (
    ImageDecodeError,
    ImageNotFoundError,
    InvalidIdentifierError,
    ProcessingError,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"})
STAGING_DIR_NAME = ".staging"

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_file_name(name: Optional[str]) -> str:
    """Reduce an uploaded file's original name to a safe identifier suffix."""
    base = Path(str(name or "")).name.strip()
    sanitized = _SAFE_NAME_RE.sub("_", base).strip("._-") or "upload"
    return sanitized[-120:]


def has_image_extension(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: Optional[str]


class ImageStore:
    """Flat-directory image store addressed by identifier."""

    def __init__(self, root: Union[str, os.PathLike]) -> None:
        self.root = Path(root)
        self.staging_dir = self.root / STAGING_DIR_NAME
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    # -- addressing -------------------------------------------------------

    def validate_identifier(self, identifier: str) -> str:
        if (
            not identifier
            or not isinstance(identifier, str)
            or identifier.startswith(".")
            or "/" in identifier
            or "\\" in identifier
            or "\x00" in identifier
            or Path(identifier).name != identifier
        ):
            raise InvalidIdentifierError(str(identifier))
        return identifier

    def path_for(self, identifier: str) -> Path:
        return self.root / self.validate_identifier(identifier)

    def new_identifier(self, original_name: Optional[str], now_ms: int) -> str:
        return f"{now_ms}-{uuid.uuid4().hex[:8]}-{sanitize_file_name(original_name)}"

    # -- reads ------------------------------------------------------------

    def get(self, identifier: str) -> bytes:
        """Return the current bytes of an image.

        Raises:
            ImageNotFoundError: If no blob exists for ``identifier``.
        """
        path = self.path_for(identifier)
        try:
            with open(path, "rb") as f:
                return f.read()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise ImageNotFoundError(identifier) from exc

    def metadata(self, identifier: str) -> ImageMetadata:
        return read_metadata(self.get(identifier))

    def exists(self, identifier: str) -> bool:
        return self.path_for(identifier).is_file()

    def entries(self) -> Iterator[str]:
        """Yield the names of all visible regular files, sorted."""
        with os.scandir(self.root) as it:
            names = sorted(
                entry.name
                for entry in it
                if not entry.name.startswith(".") and entry.is_file()
            )
        yield from names

    def list(self) -> Iterator[str]:
        """Yield identifiers whose name carries a recognized image extension."""
        return (name for name in self.entries() if has_image_extension(name))

    # -- writes -----------------------------------------------------------

    def put(self, identifier: str, data: bytes) -> None:
        """Write ``data`` under ``identifier``, overwriting any existing blob."""
        self._write_atomic(self.path_for(identifier), data)

    def replace(self, identifier: str, data: bytes) -> None:
        """Atomically swap the content of an existing image for ``data``.

        Raises:
            ImageNotFoundError: If the image does not exist.
            ProcessingError: If writing or renaming the replacement fails.
                The stored content is unchanged in that case.
        """
        path = self.path_for(identifier)
        if not path.is_file():
            raise ImageNotFoundError(identifier)
        self._write_atomic(path, data)

    def staging_path(self, original_name: Optional[str]) -> Path:
        return self.staging_dir / f"{uuid.uuid4().hex}-{sanitize_file_name(original_name)}"

    def adopt(self, identifier: str, staged_path: Union[str, os.PathLike]) -> None:
        """Move a staged upload into place as ``identifier``."""
        target = self.path_for(identifier)
        try:
            os.replace(staged_path, target)
        except OSError as exc:
            raise ProcessingError("Error storing image", exc) from exc

    def discard_staged(self, staged_path: Union[str, os.PathLike]) -> None:
        _remove_quietly(Path(staged_path))

    def _write_atomic(self, path: Path, data: bytes) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        except OSError as exc:
            raise ProcessingError("Error writing image", exc) from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            _remove_quietly(tmp_path)
            raise ProcessingError("Error writing image", exc) from exc
        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            _remove_quietly(tmp_path)
            raise ProcessingError("Error replacing image", exc) from exc


def read_metadata(data: bytes) -> ImageMetadata:
    """Decode just enough of ``data`` to report its size and format."""
    try:
        with Image.open(BytesIO(data)) as img:
            return ImageMetadata(width=img.width, height=img.height, format=img.format)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError("Stored file is not a readable image", exc) from exc


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temporary file %s: %s", path, exc)
