# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Convert images into the fixed-layout CHW tensors the two networks expect."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
from PIL import Image

from .config import DEFAULT_CONFIG, PipelineConfig
from .errors import RegionRecognitionError
from .models import PixelBuffer
from .tensor import Tensor
from .utils import clamp, round_half_up

ImageLike = Union[PixelBuffer, Image.Image]


@dataclass(frozen=True)
class DetectionInput:
    """Detection tensor plus the factors mapping model pixels back to the source."""

    tensor: Tensor
    width: int
    height: int
    scale_x: float
    scale_y: float


def as_image(source: ImageLike) -> Image.Image:
    if isinstance(source, PixelBuffer):
        return source.to_image()
    if isinstance(source, Image.Image):
        return source
    raise TypeError(f"expected PixelBuffer or PIL.Image, got {type(source).__name__}")


def flatten_on_white(image: Image.Image) -> Image.Image:
    """Composite ``image`` over an opaque white background and return RGB."""

    rgba = image.convert("RGBA")
    background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    return Image.alpha_composite(background, rgba).convert("RGB")


def nearest_multiple(value: float, stride: int = 32, lower: int = 32, upper: int = 1536) -> int:
    clipped = clamp(value, lower, upper)
    return max(lower, round_half_up(clipped / stride) * stride)


def _to_chw(rgb: Image.Image, mean, std) -> np.ndarray:
    arr = np.asarray(rgb, dtype=np.float32) / 255.0
    arr = (arr - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return arr.transpose(2, 0, 1)[np.newaxis, ...]


def normalize_for_detection(source: ImageLike, config: PipelineConfig = DEFAULT_CONFIG) -> DetectionInput:
    """Stretch the page into a stride-aligned box and apply ImageNet normalisation.

    Aspect ratio is not preserved; ``scale_x``/``scale_y`` are computed per axis
    so detected coordinates can be mapped back independently.
    """

    image = as_image(source)
    src_w = max(1, image.width)
    src_h = max(1, image.height)
    scale = min(1.0, config.det_max_side / max(src_w, src_h))
    dst_w = nearest_multiple(round_half_up(src_w * scale), config.det_stride, config.det_min_side, config.det_max_dim)
    dst_h = nearest_multiple(round_half_up(src_h * scale), config.det_stride, config.det_min_side, config.det_max_dim)

    canvas = flatten_on_white(image).resize((dst_w, dst_h), Image.BILINEAR)
    chw = _to_chw(canvas, config.det_mean, config.det_std)
    return DetectionInput(
        tensor=Tensor.from_array(chw),
        width=dst_w,
        height=dst_h,
        scale_x=src_w / dst_w,
        scale_y=src_h / dst_h,
    )


def normalize_for_recognition(crop: ImageLike, config: PipelineConfig = DEFAULT_CONFIG) -> Tensor:
    """Resize a crop to the recognition height, left-align it on a white strip."""

    image = as_image(crop)
    if image.width <= 0 or image.height <= 0:
        raise RegionRecognitionError(f"cannot recognise an empty crop ({image.width}x{image.height})")

    target_h = config.rec_height
    target_w = config.rec_max_width
    ratio = image.width / image.height
    resized_w = int(clamp(round_half_up(target_h * ratio), config.rec_min_width, target_w))

    canvas = Image.new("RGB", (target_w, target_h), (255, 255, 255))
    canvas.paste(flatten_on_white(image).resize((resized_w, target_h), Image.BILINEAR), (0, 0))
    chw = _to_chw(canvas, (0.5, 0.5, 0.5), (0.5, 0.5, 0.5))
    return Tensor.from_array(chw)


__all__ = [
    "DetectionInput",
    "as_image",
    "flatten_on_white",
    "nearest_multiple",
    "normalize_for_detection",
    "normalize_for_recognition",
]
