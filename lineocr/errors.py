# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Exception taxonomy for the line OCR pipeline."""
from __future__ import annotations


class LineOcrError(Exception):
    """Base class for every error raised by :mod:`lineocr`."""


class ModelLoadError(LineOcrError):
    """A model artifact could not be fetched or failed validation.

    Fatal for the current page and never retried automatically.
    """


class DictionaryLoadError(LineOcrError):
    """The character dictionary could not be loaded.

    The engine recovers from this by switching to the built-in alphabet.
    """


class UnsupportedTensorLayoutError(LineOcrError):
    """An inference output has a shape no layout detector recognises."""

    def __init__(self, what: str, dims) -> None:
        self.dims = tuple(int(d) for d in dims)
        super().__init__(f"unsupported {what} tensor layout: dims={list(self.dims)}")


class InferenceError(LineOcrError):
    """The inference backend failed while running a model."""


class RegionRecognitionError(LineOcrError):
    """A single region could not be recognised (malformed crop and similar).

    The page pipeline skips the region and keeps going.
    """


__all__ = [
    "DictionaryLoadError",
    "InferenceError",
    "LineOcrError",
    "ModelLoadError",
    "RegionRecognitionError",
    "UnsupportedTensorLayoutError",
]
