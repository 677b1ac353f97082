"""Runtime configuration for the image store.

Settings are read from environment variables when the application is
created, so tests can point the store at a temporary directory with
``monkeypatch.setenv`` before calling ``create_app()``.

Environment variables:
    IMAGE_STORE_DIR: Directory holding the stored images (default
        './uploads').
    PUBLIC_BASE_URL: Prefix used when building ``imageUrl`` values
        (default 'http://localhost:3000').
    CORS_ORIGINS: Comma separated list of allowed origins (default '*').
    ANNOTATION_FONT_SIZE: Font size for text annotations (default 32).
    ANNOTATION_PADDING: Padding around annotation text (default 10).
    ANNOTATION_FONT_PATH: TrueType font used for annotations (default
        'DejaVuSans.ttf'; Pillow's built-in font is used if it is missing).
    JPEG_QUALITY: Quality used when re-encoding JPEG images (default 85).
    LOG_LEVEL: Logging level name (default 'INFO').
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid integer for %s: %r", name, raw)
        return default


@dataclass(frozen=True)
class Settings:
    image_dir: Path
    public_base_url: str
    cors_origins: Tuple[str, ...]
    font_size: int
    padding: int
    font_path: str
    jpeg_quality: int
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        origins = tuple(
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        )
        return cls(
            image_dir=Path(os.getenv("IMAGE_STORE_DIR", "./uploads")),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/"),
            cors_origins=origins or ("*",),
            font_size=_env_int("ANNOTATION_FONT_SIZE", 32),
            padding=_env_int("ANNOTATION_PADDING", 10),
            font_path=os.getenv("ANNOTATION_FONT_PATH", "DejaVuSans.ttf"),
            jpeg_quality=_env_int("JPEG_QUALITY", 85),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def image_url(self, identifier: str) -> str:
        return f"{self.public_base_url}/images/{identifier}"
