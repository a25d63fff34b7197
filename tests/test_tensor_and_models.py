# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

import numpy as np
import pytest
from PIL import Image

from lineocr import (
    BBox,
    HeatmapLayout,
    Line,
    LogitsLayout,
    PixelBuffer,
    Region,
    Tensor,
    UnsupportedTensorLayoutError,
    detect_heatmap_layout,
    detect_logits_layout,
)


def test_tensor_is_flat_and_read_only():
    tensor = Tensor.from_array(np.zeros((1, 3, 4, 5)))

    assert tensor.dims == (1, 3, 4, 5)
    assert tensor.data.shape == (60,)
    assert tensor.data.dtype == np.float32
    assert tensor.data.flags.writeable is False
    assert tensor.as_array().shape == (1, 3, 4, 5)


def test_tensor_rejects_mismatched_dims():
    with pytest.raises(ValueError):
        Tensor(data=np.zeros(10, dtype=np.float32), dims=(2, 3))


def test_heatmap_layout_detection():
    assert detect_heatmap_layout((1, 1, 64, 96)) is HeatmapLayout.CHANNEL_FIRST
    assert detect_heatmap_layout((1, 64, 96, 1)) is HeatmapLayout.CHANNEL_LAST

    with pytest.raises(UnsupportedTensorLayoutError):
        detect_heatmap_layout((1, 2, 64, 96))
    with pytest.raises(UnsupportedTensorLayoutError):
        detect_heatmap_layout((1, 64, 96))


def test_logits_layout_assumes_larger_axis_is_classes():
    assert detect_logits_layout((1, 40, 6625)) == (LogitsLayout.TIME_MAJOR, 40, 6625)
    assert detect_logits_layout((1, 6625, 40)) == (LogitsLayout.CLASS_MAJOR, 40, 6625)
    assert detect_logits_layout((40, 6625)) == (LogitsLayout.TIME_MAJOR, 40, 6625)

    with pytest.raises(UnsupportedTensorLayoutError):
        detect_logits_layout((1, 1, 40, 6625))


def test_pixel_buffer_validates_length_and_round_trips():
    with pytest.raises(ValueError):
        PixelBuffer(width=2, height=2, pixels=b"\x00" * 15)

    image = Image.new("RGB", (3, 2), (10, 20, 30))
    buffer = PixelBuffer.from_image(image)

    assert (buffer.width, buffer.height) == (3, 2)
    assert len(buffer.pixels) == 24
    assert buffer.to_image().getpixel((1, 1)) == (10, 20, 30, 255)


def test_region_and_line_invariants():
    with pytest.raises(ValueError):
        Region(x=0, y=0, w=1, h=10, score=0.5)
    with pytest.raises(ValueError):
        Region(x=0, y=0, w=10, h=10, score=1.5)
    with pytest.raises(ValueError):
        Line(text="", confidence=50, bbox=BBox(x0=0, y0=0, x1=1, y1=1))

    region = Region(x=5, y=6, w=10, h=4, score=0.7)
    assert region.to_bbox() == BBox(x0=5, y0=6, x1=15, y1=10)
