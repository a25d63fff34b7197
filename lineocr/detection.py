# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Heatmap post-processing: probability grid -> candidate text regions."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import List

import numpy as np

from .config import DEFAULT_CONFIG, PipelineConfig
from .models import Region
from .tensor import HeatmapLayout, Tensor, detect_heatmap_layout
from .utils import round_half_up

logger = logging.getLogger(__name__)

__all__ = ["Component", "connected_components", "extract_heatmap", "label_heatmap", "rescale_components"]

_NEIGHBOURS = ((1, 0), (-1, 0), (0, 1), (0, -1))


@dataclass(frozen=True)
class Component:
    """Bounding box (inclusive, model pixels) and mean probability of one blob."""

    x0: int
    y0: int
    x1: int
    y1: int
    score: float
    cells: int


def extract_heatmap(output: Tensor) -> np.ndarray:
    """Return the ``H x W`` probability grid held by a detection output, clamped to [0, 1]."""

    layout = detect_heatmap_layout(output.dims)
    if layout is HeatmapLayout.CHANNEL_FIRST:
        h, w = output.dims[2], output.dims[3]
    else:
        h, w = output.dims[1], output.dims[2]
    if h <= 0 or w <= 0:
        return np.zeros((0, 0), dtype=np.float32)
    # The single channel means the first h*w values are the map in either layout.
    grid = output.data[: h * w].reshape(h, w)
    return np.clip(grid, 0.0, 1.0)


def connected_components(
    prob: np.ndarray,
    threshold: float = 0.25,
    min_cells: int = 6,
    min_width: int = 3,
    min_height: int = 2,
) -> List[Component]:
    """4-connected flood fill over cells with probability >= ``threshold``.

    Components are returned in row-major order of their first cell.
    """

    if prob.size == 0:
        return []
    h, w = prob.shape
    mask = prob >= threshold
    visited = np.zeros((h, w), dtype=bool)
    out: List[Component] = []

    for sy, sx in np.argwhere(mask):
        if visited[sy, sx]:
            continue
        visited[sy, sx] = True
        queue = deque([(int(sx), int(sy))])
        x0 = x1 = int(sx)
        y0 = y1 = int(sy)
        total = 0.0
        count = 0
        while queue:
            cx, cy = queue.popleft()
            total += float(prob[cy, cx])
            count += 1
            if cx < x0:
                x0 = cx
            elif cx > x1:
                x1 = cx
            if cy < y0:
                y0 = cy
            elif cy > y1:
                y1 = cy
            for dx, dy in _NEIGHBOURS:
                nx, ny = cx + dx, cy + dy
                if nx < 0 or nx >= w or ny < 0 or ny >= h:
                    continue
                if visited[ny, nx] or not mask[ny, nx]:
                    continue
                visited[ny, nx] = True
                queue.append((nx, ny))

        if count < min_cells or (x1 - x0) < min_width or (y1 - y0) < min_height:
            continue
        out.append(Component(x0=x0, y0=y0, x1=x1, y1=y1, score=total / count, cells=count))
    return out


def rescale_components(
    components: List[Component],
    scale_x: float,
    scale_y: float,
    image_width: int,
    image_height: int,
    config: PipelineConfig = DEFAULT_CONFIG,
) -> List[Region]:
    """Map model-space boxes to source pixels with an outward pad, then drop specks."""

    pad = config.box_pad
    regions: List[Region] = []
    for comp in components:
        x = max(0, round_half_up((comp.x0 - pad) * scale_x))
        y = max(0, round_half_up((comp.y0 - pad) * scale_y))
        right = min(image_width, round_half_up((comp.x1 + pad) * scale_x))
        bottom = min(image_height, round_half_up((comp.y1 + pad) * scale_y))
        w = max(2, right - x)
        h = max(2, bottom - y)
        if w < config.min_region_width or h < config.min_region_height:
            continue
        if w * h < config.min_region_area:
            continue
        regions.append(Region(x=x, y=y, w=w, h=h, score=min(1.0, max(0.0, comp.score))))
    return regions


def label_heatmap(
    output: Tensor,
    scale_x: float,
    scale_y: float,
    image_width: int,
    image_height: int,
    config: PipelineConfig = DEFAULT_CONFIG,
) -> List[Region]:
    """Detection output tensor -> source-space regions (unmerged, uncapped)."""

    prob = extract_heatmap(output)
    components = connected_components(
        prob,
        threshold=config.heatmap_threshold,
        min_cells=config.min_component_cells,
        min_width=config.min_component_width,
        min_height=config.min_component_height,
    )
    regions = rescale_components(components, scale_x, scale_y, image_width, image_height, config)
    logger.debug(
        "heatmap %sx%s: %d components, %d regions after rescale",
        prob.shape[1] if prob.ndim == 2 else 0,
        prob.shape[0] if prob.ndim == 2 else 0,
        len(components),
        len(regions),
    )
    return regions
