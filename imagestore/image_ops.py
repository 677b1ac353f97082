"""Image compositing utilities.

This module wraps the Pillow operations used to apply overlays to stored
images: rendering a translucent text label, scaling a freehand drawing,
and compositing either onto the base image at a given offset. Placement
is computed by :mod:`imagestore.geometry`; the helpers here only build
the overlay tile and merge it.

Compositing is restricted to the part of the overlay that intersects the
base image, so pixels outside the overlay rectangle are copied through
untouched. The result is encoded in the base image's own format.
"""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageDraw, ImageFont

from .errors import ImageDecodeError, InvalidDrawingDataError, ProcessingError
from .geometry import DrawingPlacement, TextPlacement, clip_box, visible_text_span

logger = logging.getLogger(__name__)

BACKING_COLOR = (0, 0, 0, 128)
TEXT_COLOR = (255, 255, 255, 255)
DEFAULT_FONT_PATH = "DejaVuSans.ttf"
DEFAULT_JPEG_QUALITY = 85

_PILLOW_ERRORS = (OSError, ValueError, Image.DecompressionBombError)


def _open_image(data: bytes) -> Image.Image:
    """Open raw image bytes with Pillow and load the pixels."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except _PILLOW_ERRORS as exc:
        raise ImageDecodeError("Stored file is not a readable image", exc) from exc
    return img


def decode_drawing_data(payload: str) -> bytes:
    """Decode a base64 drawing, with or without a ``data:`` URL prefix."""
    if not isinstance(payload, str) or not payload.strip():
        raise InvalidDrawingDataError()
    encoded = payload.strip()
    if encoded.startswith("data:"):
        if "," not in encoded:
            raise InvalidDrawingDataError()
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidDrawingDataError() from exc
    if not data:
        raise InvalidDrawingDataError()
    return data


def drawing_size(data: bytes) -> Tuple[int, int]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except _PILLOW_ERRORS as exc:
        raise ProcessingError("drawingData is not a readable image", exc) from exc


def _load_font(font_path: str, size: int) -> ImageFont.ImageFont:
    try:
        return ImageFont.truetype(font_path, size=size)
    except OSError:
        logger.debug("Font %s not available, using Pillow's default font", font_path)
        return ImageFont.load_default(size=size)


def render_text_tile(
    text: str,
    placement: TextPlacement,
    clip: Tuple[int, int, int, int],
    font_path: str = DEFAULT_FONT_PATH,
) -> Image.Image:
    """Render the part of a text label that falls inside ``clip``.

    ``clip`` is the visible part of the placement box in base image
    coordinates, as returned by :func:`geometry.clip_box`. The tile covers
    only that region, so its size is bounded by the base image no matter
    how long the text is. Glyphs that run past the estimated box width are
    cut off at the tile edge.
    """
    left, top, right, bottom = clip
    tile = Image.new("RGBA", (right - left, bottom - top), BACKING_COLOR)
    first, last, x = visible_text_span(text, placement.text_x, placement.font_size, left, right)
    if first < last:
        draw = ImageDraw.Draw(tile)
        font = _load_font(font_path, placement.font_size)
        draw.text((x - left, placement.text_y - top), text[first:last], fill=TEXT_COLOR, font=font)
    return tile


def _working_mode(img: Image.Image) -> str:
    if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return "RGBA"
    return "RGB"


def _composite_tile(base: Image.Image, tile: Image.Image, origin: Tuple[int, int]) -> Image.Image:
    """Composite ``tile`` over ``base`` with its top-left corner at ``origin``.

    Only the intersection with the base is merged; the rest of the base is
    left as is. Negative or out-of-range origins are clipped.
    """
    left, top = origin
    clip = clip_box((left, top, left + tile.width, top + tile.height), base.size)
    if clip is None:
        return base
    clip_left, clip_top, clip_right, clip_bottom = clip
    region = base.crop((clip_left, clip_top, clip_right, clip_bottom)).convert("RGBA")
    piece = tile.crop((clip_left - left, clip_top - top, clip_right - left, clip_bottom - top))
    merged = Image.alpha_composite(region, piece)
    base.paste(merged.convert(base.mode), (clip_left, clip_top))
    return base


def _encode(img: Image.Image, fmt: str, jpeg_quality: int) -> bytes:
    buffer = BytesIO()
    if fmt in ("JPEG", "MPO"):
        img.convert("RGB").save(buffer, format="JPEG", quality=jpeg_quality)
    else:
        img.save(buffer, format=fmt)
    return buffer.getvalue()


def _apply_tile(base_bytes: bytes, build_tile, jpeg_quality: int) -> bytes:
    base = _open_image(base_bytes)
    fmt = base.format or "PNG"
    original_mode = base.mode
    try:
        work = base.convert(_working_mode(base))
        tile, origin = build_tile(work.size)
        result = work if tile is None else _composite_tile(work, tile, origin)
        if original_mode in ("L", "LA") and result.mode != original_mode:
            result = result.convert(original_mode)
        return _encode(result, fmt, jpeg_quality)
    except _PILLOW_ERRORS as exc:
        raise ProcessingError("Error compositing overlay", exc) from exc
    finally:
        base.close()


def composite_text(
    base_bytes: bytes,
    text: str,
    placement: TextPlacement,
    font_path: str = DEFAULT_FONT_PATH,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """Draw a text label over an image.

    Args:
        base_bytes: Raw bytes of the stored image.
        text: Text to render.
        placement: Box and text position from :func:`geometry.place_text`.
        font_path: TrueType font to render with.
        jpeg_quality: Quality used if the base image is a JPEG.

    Returns:
        The annotated image, same size and format as the base.

    Raises:
        ImageDecodeError: If ``base_bytes`` is not an image.
        ProcessingError: If Pillow fails while compositing or encoding.
    """

    def build(size):
        clip = clip_box(placement.box, size)
        if clip is None:
            return None, (0, 0)
        return render_text_tile(text, placement, clip, font_path), clip[:2]

    return _apply_tile(base_bytes, build, jpeg_quality)


def composite_drawing(
    base_bytes: bytes,
    drawing_bytes: bytes,
    placement: DrawingPlacement,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """Lay a drawing over an image, resized to the placement size if needed."""

    def build(_size):
        try:
            with Image.open(BytesIO(drawing_bytes)) as drawing:
                tile = drawing.convert("RGBA")
        except _PILLOW_ERRORS as exc:
            raise ProcessingError("drawingData is not a readable image", exc) from exc
        if placement.scaled or tile.size != (placement.width, placement.height):
            tile = tile.resize((placement.width, placement.height), Image.LANCZOS)
        return tile, (placement.x, placement.y)

    return _apply_tile(base_bytes, build, jpeg_quality)
