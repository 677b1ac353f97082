"""Pydantic response schemas for the image store API.

Field names follow the JSON the endpoints have always returned
(``imageUrl``, ``filePath``), so the models use camelCase attributes.
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel


class UploadResponse(BaseModel):
    """Response returned after an upload.

    Attributes:
        message: Human readable outcome.
        imageUrl: URL the image can be fetched from.
        filePath: The identifier assigned to the image.
        duplicate: True when identical content was already stored and its
            identifier was reused.
    """

    message: str
    imageUrl: str
    filePath: str
    duplicate: bool = False


class MutationResponse(BaseModel):
    message: str
    imageUrl: str


class ImageEntry(BaseModel):
    filename: str
    url: str


class ImageListResponse(BaseModel):
    message: str
    images: List[ImageEntry]


class HealthResponse(BaseModel):
    status: str
    images: int
    dedupEntries: int
    dedupVolatile: bool
