# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Region geometry: merge line fragments, split over-wide lines."""
from __future__ import annotations

from typing import List, Sequence

from .config import DEFAULT_CONFIG, PipelineConfig
from .models import Region
from .utils import round_half_up

__all__ = ["is_near", "is_same_line", "merge_regions", "split_wide_region", "union"]


def is_same_line(a: Region, b: Region, config: PipelineConfig = DEFAULT_CONFIG) -> bool:
    """Vertical overlap above a fraction of the smaller height, or close centres.

    Both tests are needed: centre distance alone fails for mixed font sizes.
    """

    overlap = max(0, min(a.bottom, b.bottom) - max(a.y, b.y))
    min_height = min(a.h, b.h)
    if overlap > min_height * config.merge_overlap_ratio:
        return True
    center_a = a.y + a.h / 2
    center_b = b.y + b.h / 2
    return abs(center_a - center_b) <= max(2, min_height * config.merge_center_ratio)


def is_near(left: Region, right: Region, config: PipelineConfig = DEFAULT_CONFIG) -> bool:
    gap = right.x - left.right
    max_gap = min(left.h * config.merge_gap_ratio, right.h * config.merge_gap_ratio, config.merge_max_gap)
    return config.merge_min_gap <= gap <= max_gap


def union(a: Region, b: Region) -> Region:
    x0 = min(a.x, b.x)
    y0 = min(a.y, b.y)
    x1 = max(a.right, b.right)
    y1 = max(a.bottom, b.bottom)
    return Region(x=x0, y=y0, w=x1 - x0, h=y1 - y0, score=(a.score + b.score) / 2)


def merge_regions(regions: Sequence[Region], config: PipelineConfig = DEFAULT_CONFIG) -> List[Region]:
    """Single top-to-bottom, left-to-right sweep joining fragments of one line.

    Each region is only compared with the most recently emitted box.
    """

    if len(regions) <= 1:
        return list(regions)
    ordered = sorted(regions, key=lambda r: (r.y, r.x))
    merged: List[Region] = [ordered[0]]
    for region in ordered[1:]:
        last = merged[-1]
        if is_same_line(last, region, config) and is_near(last, region, config):
            merged[-1] = union(last, region)
        else:
            merged.append(region)
    return merged


def split_wide_region(region: Region, config: PipelineConfig = DEFAULT_CONFIG) -> List[Region]:
    """Cut a region wider than ``split_max_aspect`` heights into overlapping chunks.

    Consecutive chunks overlap by ``split_overlap_ratio`` of the height so no
    glyph is cut in both neighbours. The last chunk ends exactly at the
    region's right edge.
    """

    aspect = region.w / max(1, region.h)
    if aspect <= config.split_max_aspect:
        return [region]

    chunk_w = max(config.split_min_chunk, round_half_up(region.h * config.split_max_aspect))
    overlap = max(config.split_min_overlap, round_half_up(region.h * config.split_overlap_ratio))
    out: List[Region] = []
    x = region.x
    end = region.right
    while x < end:
        right = min(end, x + chunk_w)
        out.append(Region(x=x, y=region.y, w=max(2, right - x), h=region.h, score=region.score))
        if right >= end:
            break
        x = right - overlap
    return out or [region]
