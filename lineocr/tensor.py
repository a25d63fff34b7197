# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Typed tensor container and output layout detection.

Exported detection and recognition heads do not agree on axis order. The two
detectors below isolate the assumptions made about them:

* detection: the channel axis of a ``[1, ?, ?, ?]`` heatmap is whichever inner
  axis equals 1 (axis 1 checked first);
* recognition: of the two non-batch axes of the logits, the larger one is the
  class axis, because dictionaries hold far more symbols than a line has
  time steps. This is a heuristic, not something the shape guarantees.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Tuple

import numpy as np

from .errors import UnsupportedTensorLayoutError


@dataclass(frozen=True)
class Tensor:
    """Flat float32 buffer plus its logical shape. Never mutated after creation."""

    data: np.ndarray
    dims: Tuple[int, ...]

    def __post_init__(self) -> None:
        dims = tuple(int(d) for d in self.dims)
        data = np.ascontiguousarray(self.data, dtype=np.float32).reshape(-1)
        expected = int(np.prod(dims)) if dims else 0
        if data.size != expected:
            raise ValueError(f"tensor holds {data.size} values but dims {list(dims)} need {expected}")
        data.setflags(write=False)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "dims", dims)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Tensor":
        arr = np.asarray(array, dtype=np.float32)
        return cls(data=arr.copy(), dims=tuple(arr.shape))

    def as_array(self) -> np.ndarray:
        return self.data.reshape(self.dims)

    @property
    def rank(self) -> int:
        return len(self.dims)


class HeatmapLayout(str, Enum):
    CHANNEL_FIRST = "channel_first"  # [1, 1, H, W]
    CHANNEL_LAST = "channel_last"  # [1, H, W, 1]


class LogitsLayout(str, Enum):
    TIME_MAJOR = "time_major"  # [.., T, C]
    CLASS_MAJOR = "class_major"  # [.., C, T]


def detect_heatmap_layout(dims: Sequence[int]) -> HeatmapLayout:
    dims = tuple(int(d) for d in dims)
    if len(dims) != 4:
        raise UnsupportedTensorLayoutError("detection", dims)
    if dims[1] == 1:
        return HeatmapLayout.CHANNEL_FIRST
    if dims[3] == 1:
        return HeatmapLayout.CHANNEL_LAST
    raise UnsupportedTensorLayoutError("detection", dims)


def detect_logits_layout(dims: Sequence[int]) -> Tuple[LogitsLayout, int, int]:
    """Return ``(layout, time_steps, classes)`` for 3-D ``[1, A, B]`` or 2-D ``[A, B]`` logits."""

    dims = tuple(int(d) for d in dims)
    if len(dims) == 3:
        first, second = dims[1], dims[2]
    elif len(dims) == 2:
        first, second = dims
    else:
        raise UnsupportedTensorLayoutError("recognition", dims)

    if first > second:
        return LogitsLayout.CLASS_MAJOR, second, first
    return LogitsLayout.TIME_MAJOR, first, second


__all__ = [
    "HeatmapLayout",
    "LogitsLayout",
    "Tensor",
    "detect_heatmap_layout",
    "detect_logits_layout",
]
