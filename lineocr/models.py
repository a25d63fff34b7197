# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Data models exchanged between pipeline stages.

Every model is frozen: stages build new values instead of mutating the ones
they receive. Pydantic validates the geometric invariants at construction so
a malformed region never reaches recognition.
"""
from __future__ import annotations

from typing import List, Optional

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, model_validator


class PixelBuffer(BaseModel):
    """Rasterised page: interleaved RGBA bytes, owned by the caller."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)
    pixels: bytes = Field(..., repr=False)

    @model_validator(mode="after")
    def _check_length(self) -> "PixelBuffer":
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise ValueError(
                f"pixel buffer holds {len(self.pixels)} bytes, expected {expected} for "
                f"{self.width}x{self.height} RGBA"
            )
        return self

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        rgba = image.convert("RGBA")
        width, height = rgba.size
        return cls(width=width, height=height, pixels=rgba.tobytes())

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), self.pixels)


class Region(BaseModel):
    """Candidate text rectangle in source-image pixels with its mean detection score."""

    model_config = ConfigDict(frozen=True)

    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    w: int = Field(..., ge=2)
    h: int = Field(..., ge=2)
    score: float = Field(..., ge=0.0, le=1.0)

    @property
    def right(self) -> int:
        return self.x + self.w

    @property
    def bottom(self) -> int:
        return self.y + self.h

    def to_bbox(self) -> "BBox":
        return BBox(x0=self.x, y0=self.y, x1=self.right, y1=self.bottom)


class BBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


class Line(BaseModel):
    """Recognised content of one region (or of one group of chunks)."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=100.0)
    bbox: BBox


class PageResult(BaseModel):
    """One recognised page.

    ``page_number`` is the 1-based source page when the page came from a
    document run; ``table_rows`` is filled only in table mode.
    """

    model_config = ConfigDict(frozen=True)

    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    lines: List[Line] = Field(default_factory=list)
    page_number: Optional[int] = Field(None, ge=1)
    table_rows: List[List[str]] = Field(default_factory=list)


class DocumentResult(BaseModel):
    """Outcome of a multi-page run; ``cancelled`` marks a run stopped between pages."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    pages: List[PageResult] = Field(default_factory=list)
    cancelled: bool = False
    language: str = "en"


__all__ = ["BBox", "DocumentResult", "Line", "PageResult", "PixelBuffer", "Region"]
