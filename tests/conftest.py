"""Shared fixtures for the image store tests.

``main`` builds a module-level app at import time, so point the store at a
throwaway directory before any test module imports it.
"""

import io
import os
import tempfile

os.environ.setdefault("IMAGE_STORE_DIR", tempfile.mkdtemp(prefix="imagestore-tests-"))

import pytest
from PIL import Image

from imagestore.dedup import InMemoryDedupIndex
from imagestore.service import ImageService
from imagestore.storage import ImageStore


def make_image(size=(200, 100), fmt="PNG", color=None, mode="RGB") -> bytes:
    """Encode a test image. Without ``color`` a deterministic gradient is drawn."""
    if color is not None:
        img = Image.new(mode, size, color=color)
    else:
        width, height = size
        img = Image.new("RGB", size)
        img.putdata([(x % 256, y % 256, (x + y) % 256) for y in range(height) for x in range(width)])
        img = img.convert(mode)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def store(tmp_path):
    return ImageStore(tmp_path / "uploads")


@pytest.fixture
def index():
    return InMemoryDedupIndex()


@pytest.fixture
def service(store, index):
    return ImageService(store, index)
