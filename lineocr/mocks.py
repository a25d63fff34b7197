# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Deterministic stand-ins for the inference backend and model provider.

Used by the test-suite and by ``lineocr --use-mocks`` so the full pipeline
can run without model files.
"""
from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .config import DEFAULT_CONFIG
from .dictionary import FALLBACK_ALPHABET
from .errors import DictionaryLoadError
from .interfaces import BytesCallback, InferenceBackend, ModelProvider
from .tensor import Tensor

TensorSource = Union[Tensor, Sequence[Tensor], Callable[[Tensor], Tensor]]

__all__ = [
    "InMemoryModelProvider",
    "InkDetector",
    "InkRecognizer",
    "StubInferenceBackend",
    "encode_text_logits",
    "heatmap_tensor",
    "mock_backend_factory",
]


def heatmap_tensor(grid: np.ndarray, channel_last: bool = False) -> Tensor:
    """Wrap an ``H x W`` probability grid as a detection output tensor."""

    grid = np.asarray(grid, dtype=np.float32)
    if channel_last:
        return Tensor.from_array(grid[np.newaxis, :, :, np.newaxis])
    return Tensor.from_array(grid[np.newaxis, np.newaxis, :, :])


def encode_text_logits(
    text: str,
    dictionary: Sequence[str],
    steps: int = 40,
    blank_first: bool = True,
    class_major: bool = False,
    high: float = 12.0,
    low: float = -4.0,
) -> Tensor:
    """Build ``[1, T, C]`` logits whose greedy CTC path spells ``text``.

    Characters are separated by blank steps so repeated glyphs survive the
    collapse.
    """

    classes = len(dictionary) + 1
    if steps >= classes:
        raise ValueError("steps must be smaller than the class count")
    blank = 0 if blank_first else classes - 1
    offset = 1 if blank_first else 0
    lookup = {glyph: idx for idx, glyph in enumerate(dictionary)}

    path: List[int] = []
    for char in text:
        path.extend([lookup[char] + offset, blank])
    if len(path) > steps:
        raise ValueError(f"text needs {len(path)} steps, only {steps} available")
    path.extend([blank] * (steps - len(path)))

    logits = np.full((steps, classes), low, dtype=np.float32)
    logits[np.arange(steps), path] = high
    if class_major:
        return Tensor.from_array(logits.T[np.newaxis])
    return Tensor.from_array(logits[np.newaxis])


def _next_output(source: TensorSource, tensor: Tensor, calls: int) -> Tensor:
    if isinstance(source, Tensor):
        return source
    if callable(source):
        return source(tensor)
    outputs = list(source)
    return outputs[min(calls, len(outputs) - 1)]


class StubInferenceBackend(InferenceBackend):
    """Return fixed tensors (or computed ones) and record every call."""

    def __init__(self, detection: TensorSource, recognition: TensorSource) -> None:
        self.detection = detection
        self.recognition = recognition
        self.detection_calls: List[Tensor] = []
        self.recognition_calls: List[Tensor] = []
        self.closed = False

    async def run_detection(self, tensor: Tensor) -> Tensor:
        result = _next_output(self.detection, tensor, len(self.detection_calls))
        self.detection_calls.append(tensor)
        return result

    async def run_recognition(self, tensor: Tensor) -> Tensor:
        result = _next_output(self.recognition, tensor, len(self.recognition_calls))
        self.recognition_calls.append(tensor)
        return result

    def close(self) -> None:
        self.closed = True


def _ink_mask(tensor: Tensor, mean, std, level: float = 0.5) -> np.ndarray:
    chw = tensor.as_array()[0]
    rgb = chw * np.asarray(std, dtype=np.float32)[:, None, None] + np.asarray(mean, dtype=np.float32)[:, None, None]
    return rgb.mean(axis=0) < level


class InkDetector:
    """Heatmap that is 0.9 wherever the de-normalised detection input is dark."""

    def __init__(self, mean=DEFAULT_CONFIG.det_mean, std=DEFAULT_CONFIG.det_std) -> None:
        self.mean = mean
        self.std = std

    def __call__(self, tensor: Tensor) -> Tensor:
        mask = _ink_mask(tensor, self.mean, self.std)
        return heatmap_tensor(np.where(mask, 0.9, 0.0))


class InkRecognizer:
    """Spell ``text`` for crops containing ink, all-blank logits otherwise."""

    def __init__(self, text: str = "文字", dictionary: Sequence[str] = FALLBACK_ALPHABET, steps: int = 40) -> None:
        self.dictionary = list(dictionary)
        self.inked = encode_text_logits(text, self.dictionary, steps=steps)
        self.blank = encode_text_logits("", self.dictionary, steps=steps)

    def __call__(self, tensor: Tensor) -> Tensor:
        if _ink_mask(tensor, (0.5, 0.5, 0.5), (0.5, 0.5, 0.5)).any():
            return self.inked
        return self.blank


def mock_backend_factory(detection_model: bytes, recognition_model: bytes) -> StubInferenceBackend:
    return StubInferenceBackend(detection=InkDetector(), recognition=InkRecognizer())


class InMemoryModelProvider(ModelProvider):
    """Serve model bytes and dictionary text held in memory.

    ``dictionary=None`` makes :meth:`load_dictionary` raise
    :class:`DictionaryLoadError`.
    """

    def __init__(
        self,
        detection_model: bytes = b"\x08\x07det-model",
        recognition_model: bytes = b"\x08\x07rec-model",
        dictionary: Optional[str] = "\n".join(FALLBACK_ALPHABET),
        chunk: int = 4,
    ) -> None:
        self.detection_model = detection_model
        self.recognition_model = recognition_model
        self.dictionary = dictionary
        self.chunk = max(1, chunk)
        self.loads = 0

    def _serve(self, data: bytes, on_bytes: Optional[BytesCallback]) -> bytes:
        self.loads += 1
        if on_bytes is not None and data:
            for end in range(self.chunk, len(data) + self.chunk, self.chunk):
                on_bytes(min(end, len(data)), len(data))
        return data

    async def load_detection_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        return self._serve(self.detection_model, on_bytes)

    async def load_recognition_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        return self._serve(self.recognition_model, on_bytes)

    async def load_dictionary(self) -> str:
        if self.dictionary is None:
            raise DictionaryLoadError("dictionary unavailable")
        return self.dictionary
