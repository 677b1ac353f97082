"""Overlay placement.

Works out where a text annotation or a drawing lands on a base image of a
given size. Nothing here touches pixels; bounds are not enforced either,
an anchor outside the image simply yields a rectangle the compositor
clips.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

DEFAULT_FONT_SIZE = 32
DEFAULT_PADDING = 10

# Average glyph advance is roughly font size / 1.8 for Latin text.
GLYPH_WIDTH_DIVISOR = 1.8


class OverlayKind(str, enum.Enum):
    TEXT = "text"
    DRAWING = "drawing"


@dataclass(frozen=True)
class OverlaySpec:
    """A single overlay request. Built per request and never stored.

    ``payload`` is the annotation text for ``TEXT`` and the decoded image
    bytes for ``DRAWING``.
    """

    kind: OverlayKind
    payload: Union[str, bytes]
    position: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class TextPlacement:
    box_x: int
    box_y: int
    box_width: int
    box_height: int
    text_x: int
    text_y: int
    font_size: int
    padding: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """(left, top, right, bottom), right and bottom exclusive."""
        return (self.box_x, self.box_y, self.box_x + self.box_width, self.box_y + self.box_height)


@dataclass(frozen=True)
class DrawingPlacement:
    x: int
    y: int
    width: int
    height: int
    scaled: bool

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


def glyph_advance(font_size: int = DEFAULT_FONT_SIZE) -> float:
    return font_size / GLYPH_WIDTH_DIVISOR


def estimate_text_width(text: str, font_size: int = DEFAULT_FONT_SIZE) -> int:
    return math.ceil(len(text) * glyph_advance(font_size))


def place_text(
    text: str,
    x: float,
    y: float,
    font_size: int = DEFAULT_FONT_SIZE,
    padding: int = DEFAULT_PADDING,
) -> TextPlacement:
    """Place a text backing box with its bottom-left corner at ``(x, y)``.

    The box is ``estimated text width + padding`` wide and
    ``font_size + padding`` tall; the text sits inside it offset by half
    the padding.
    """
    if font_size <= 0:
        raise ValueError(f"font_size must be positive, got {font_size}")
    if padding < 0:
        raise ValueError(f"padding must not be negative, got {padding}")
    box_height = font_size + padding
    box_width = estimate_text_width(text, font_size) + padding
    box_x = int(x)
    box_y = int(y) - box_height
    return TextPlacement(
        box_x=box_x,
        box_y=box_y,
        box_width=box_width,
        box_height=box_height,
        text_x=box_x + padding // 2,
        text_y=box_y + padding // 2,
        font_size=font_size,
        padding=padding,
    )


def clip_box(
    box: Tuple[int, int, int, int], size: Tuple[int, int]
) -> Optional[Tuple[int, int, int, int]]:
    """Intersect ``box`` with an image of ``size``; None if they do not overlap."""
    left, top = max(box[0], 0), max(box[1], 0)
    right, bottom = min(box[2], size[0]), min(box[3], size[1])
    if left >= right or top >= bottom:
        return None
    return left, top, right, bottom


def visible_text_span(
    text: str,
    text_x: int,
    font_size: int,
    clip_left: int,
    clip_right: int,
    slack: int = 8,
) -> Tuple[int, int, int]:
    """Pick the slice of ``text`` that can reach the columns ``[clip_left, clip_right)``.

    Returns ``(first, last, x)``: ``text[first:last]`` is the slice and ``x``
    the estimated column its first glyph starts at. ``slack`` extra glyphs
    on each side absorb the gap between real and estimated advances.
    """
    advance = glyph_advance(font_size)
    first = max(0, math.floor((clip_left - text_x) / advance) - slack)
    last = min(len(text), math.ceil((clip_right - text_x) / advance) + slack)
    if last < first:
        last = first
    return first, last, text_x + round(first * advance)


def fit_within(size: Tuple[int, int], bounds: Tuple[int, int]) -> Tuple[int, int]:
    """Scale ``size`` down to fit ``bounds`` keeping its aspect ratio.

    Sizes that already fit are returned unchanged; nothing is upscaled.
    """
    width, height = size
    max_width, max_height = bounds
    if width <= 0 or height <= 0:
        raise ValueError(f"overlay size must be positive, got {size}")
    if max_width <= 0 or max_height <= 0:
        raise ValueError(f"base size must be positive, got {bounds}")
    if width <= max_width and height <= max_height:
        return width, height
    # Integer arithmetic keeps exact ratios exact.
    if width * max_height >= height * max_width:
        return max_width, max(1, height * max_width // width)
    return max(1, width * max_height // height), max_height


def place_drawing(
    drawing_size: Tuple[int, int],
    base_size: Tuple[int, int],
    position: Optional[Tuple[float, float]] = None,
) -> DrawingPlacement:
    x, y = position if position is not None else (0, 0)
    width, height = fit_within(drawing_size, base_size)
    return DrawingPlacement(
        x=int(x),
        y=int(y),
        width=width,
        height=height,
        scaled=(width, height) != tuple(drawing_size),
    )


def plan_overlay(
    spec: OverlaySpec,
    base_size: Tuple[int, int],
    overlay_size: Optional[Tuple[int, int]] = None,
    font_size: int = DEFAULT_FONT_SIZE,
    padding: int = DEFAULT_PADDING,
) -> Union[TextPlacement, DrawingPlacement]:
    """Compute the placement for ``spec`` on a base image of ``base_size``.

    Text overlays need a position. Drawing overlays need ``overlay_size``,
    the pixel size of the decoded drawing.
    """
    if spec.kind is OverlayKind.TEXT:
        if spec.position is None:
            raise ValueError("text overlays need a position")
        x, y = spec.position
        return place_text(str(spec.payload), x, y, font_size=font_size, padding=padding)
    if overlay_size is None:
        raise ValueError("drawing overlays need the drawing size")
    return place_drawing(overlay_size, base_size, spec.position)
