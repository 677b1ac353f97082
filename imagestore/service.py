"""Upload, fetch, mutation and catalog flows.

``ImageService`` is built once per application with its store and dedup
index and shared by every request. Blocking file and Pillow work runs in
worker threads; ordering is enforced with two lock tables:

- ingest holds a per-digest lock across lookup, adopt and register, so
  two concurrent uploads of the same bytes resolve to one identifier
  (the first to register wins, the other reuses its identifier);
- mutations hold a per-identifier lock across read, composite and
  replace, so concurrent edits of one image are applied one after the
  other instead of overwriting each other.

A mutation drops the image's digest binding, under that digest's ingest
lock, before it writes: the bytes on disk will no longer match the digest
they were uploaded with, and an upload of the original content must not be
deduplicated onto the edited image. If the mutation fails the blob is
unchanged and the binding is put back. A cancelled mutation keeps its lock
until the worker thread finishes, so edits are never interleaved.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Callable, List, Optional

from . import image_ops
from .dedup import DedupIndex
from .errors import (
    EmptyCatalogError,
    ImageNotFoundError,
    InvalidIdentifierError,
    ProcessingError,
)
from .fingerprint import fingerprint_file
from .geometry import (
    DEFAULT_FONT_SIZE,
    DEFAULT_PADDING,
    OverlayKind,
    OverlaySpec,
    plan_overlay,
)
from .locks import KeyedLock
from .storage import ImageMetadata, ImageStore, read_metadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedFile:
    """An upload written to the staging area, not yet fingerprinted."""

    path: Path
    original_name: str


@dataclass(frozen=True)
class ImageRecord:
    identifier: str
    content_digest: str
    duplicate: bool = False


class ImageService:
    def __init__(
        self,
        store: ImageStore,
        index: DedupIndex,
        font_size: int = DEFAULT_FONT_SIZE,
        padding: int = DEFAULT_PADDING,
        font_path: str = image_ops.DEFAULT_FONT_PATH,
        jpeg_quality: int = image_ops.DEFAULT_JPEG_QUALITY,
    ) -> None:
        self.store = store
        self.index = index
        self.font_size = font_size
        self.padding = padding
        self.font_path = font_path
        self.jpeg_quality = jpeg_quality
        self._ingest_locks = KeyedLock()
        self._mutation_locks = KeyedLock()

    # -- ingest -----------------------------------------------------------

    async def ingest(self, staged: StagedFile) -> ImageRecord:
        """Store a staged upload, or reuse the identifier of identical content."""
        try:
            digest = await asyncio.to_thread(fingerprint_file, staged.path)
        except OSError as exc:
            self.store.discard_staged(staged.path)
            raise ProcessingError("Error uploading image", exc) from exc

        async with self._ingest_locks.hold(digest):
            existing = self.index.lookup(digest)
            if existing is not None:
                if await asyncio.to_thread(self.store.exists, existing):
                    self.store.discard_staged(staged.path)
                    logger.info("Duplicate upload of %s, reusing %s", staged.original_name, existing)
                    return ImageRecord(existing, digest, duplicate=True)
                logger.warning("Dropping dedup entry for missing image %s", existing)
                self.index.discard(digest)

            identifier = self.store.new_identifier(staged.original_name, time.time_ns() // 1_000_000)
            try:
                await asyncio.to_thread(self.store.adopt, identifier, staged.path)
            except ProcessingError as exc:
                self.store.discard_staged(staged.path)
                raise ProcessingError("Error uploading image", exc.cause) from exc
            self.index.register(digest, identifier)
            logger.info("Stored %s as %s (sha256 %s)", staged.original_name, identifier, digest[:12])
            return ImageRecord(identifier, digest)

    # -- reads ------------------------------------------------------------

    async def fetch(self, identifier: str) -> bytes:
        """Return the bytes of an image.

        Names that can never be identifiers, dot-prefixed bookkeeping
        entries among them, are reported as not found.
        """
        try:
            return await asyncio.to_thread(self.store.get, identifier)
        except InvalidIdentifierError as exc:
            raise ImageNotFoundError(identifier) from exc

    def catalog(self, offset: int = 0, limit: Optional[int] = None) -> List[str]:
        """Return one page of stored image identifiers.

        Raises:
            EmptyCatalogError: If the store is empty, or holds no file with
                a recognized image extension.
        """
        if next(self.store.entries(), None) is None:
            raise EmptyCatalogError("No images found")
        names = self.store.list()
        first = next(names, None)
        if first is None:
            raise EmptyCatalogError("No valid image files found")
        stop = None if limit is None else offset + limit
        return list(islice([first, *names], offset, stop))

    # -- mutations --------------------------------------------------------

    async def annotate(self, identifier: str, text: str, x: float, y: float) -> None:
        self.store.validate_identifier(identifier)
        spec = OverlaySpec(OverlayKind.TEXT, text, (x, y))

        def render(base: bytes, meta: ImageMetadata) -> bytes:
            placement = plan_overlay(
                spec, (meta.width, meta.height), font_size=self.font_size, padding=self.padding
            )
            return image_ops.composite_text(
                base, text, placement, font_path=self.font_path, jpeg_quality=self.jpeg_quality
            )

        await self._mutate(identifier, "Error annotating image", render)
        logger.info("Annotated %s at (%s, %s)", identifier, x, y)

    async def draw(
        self,
        identifier: str,
        drawing_data: str,
        x: Optional[float] = None,
        y: Optional[float] = None,
    ) -> None:
        self.store.validate_identifier(identifier)
        drawing = image_ops.decode_drawing_data(drawing_data)
        spec = OverlaySpec(OverlayKind.DRAWING, drawing, (x or 0, y or 0))

        def render(base: bytes, meta: ImageMetadata) -> bytes:
            placement = plan_overlay(
                spec, (meta.width, meta.height), overlay_size=image_ops.drawing_size(drawing)
            )
            return image_ops.composite_drawing(base, drawing, placement, jpeg_quality=self.jpeg_quality)

        await self._mutate(identifier, "Error drawing on image", render)
        logger.info("Applied drawing to %s at (%s, %s)", identifier, x or 0, y or 0)

    async def _mutate(
        self,
        identifier: str,
        failure_message: str,
        render: Callable[[bytes, ImageMetadata], bytes],
    ) -> None:
        async with self._mutation_locks.hold(identifier):
            base = await asyncio.to_thread(self.store.get, identifier)
            digest = await self._unbind(identifier)

            def work() -> None:
                updated = render(base, read_metadata(base))
                self.store.replace(identifier, updated)

            job = asyncio.ensure_future(asyncio.to_thread(work))
            try:
                await asyncio.shield(job)
            except asyncio.CancelledError:
                # The worker thread cannot be stopped; keep the lock until it is done.
                await _wait_out(job)
                if job.exception() is not None:
                    await self._rebind(digest, identifier)
                raise
            except ProcessingError as exc:
                await self._rebind(digest, identifier)
                logger.error("%s %s: %s", failure_message, identifier, exc.details)
                raise ProcessingError(failure_message, exc.cause or exc) from exc
            except ValueError as exc:
                await self._rebind(digest, identifier)
                logger.error("%s %s: %s", failure_message, identifier, exc)
                raise ProcessingError(failure_message, exc) from exc

    async def _unbind(self, identifier: str) -> Optional[str]:
        """Drop the digest binding of ``identifier`` ahead of a mutation."""
        digest = self.index.digest_for(identifier)
        if digest is None:
            return None
        async with self._ingest_locks.hold(digest):
            self.index.discard_identifier(identifier)
        return digest

    async def _rebind(self, digest: Optional[str], identifier: str) -> None:
        """Restore a binding dropped by a mutation that left the blob unchanged."""
        if digest is None:
            return
        async with self._ingest_locks.hold(digest):
            if self.index.lookup(digest) is None:
                self.index.register(digest, identifier)


async def _wait_out(job: asyncio.Future) -> None:
    while not job.done():
        try:
            await asyncio.wait({job})
        except asyncio.CancelledError:
            continue
