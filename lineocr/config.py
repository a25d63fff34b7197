# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Tunables for the detection/recognition pipeline.

Defaults reproduce the PP-OCR style det + rec pairing the pipeline was tuned
for. Every value can be overridden from the environment with a ``LINEOCR_``
prefixed variable (see :meth:`PipelineConfig.from_env`).
"""
from __future__ import annotations

import os
from typing import Any, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

_ENV_PREFIX = "LINEOCR_"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_truthy(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


class PipelineConfig(BaseModel):
    """Immutable bundle of every numeric knob used by the pipeline."""

    model_config = ConfigDict(frozen=True)

    # detection input
    det_max_side: int = Field(960, ge=32)
    det_stride: int = Field(32, ge=1)
    det_min_side: int = Field(32, ge=1)
    det_max_dim: int = Field(1536, ge=32)
    det_mean: Tuple[float, float, float] = (0.485, 0.456, 0.406)
    det_std: Tuple[float, float, float] = (0.229, 0.224, 0.225)

    # recognition input
    rec_height: int = Field(48, ge=8)
    rec_max_width: int = Field(320, ge=16)
    rec_min_width: int = Field(16, ge=1)

    # heatmap labelling
    heatmap_threshold: float = Field(0.25, ge=0.0, le=1.0)
    min_component_cells: int = Field(6, ge=1)
    min_component_width: int = Field(3, ge=0)
    min_component_height: int = Field(2, ge=0)
    box_pad: int = Field(3, ge=0)
    min_region_width: int = Field(8, ge=1)
    min_region_height: int = Field(6, ge=1)
    min_region_area: int = Field(80, ge=1)
    max_regions: int = Field(300, ge=1)

    # line merging
    merge_overlap_ratio: float = Field(0.3, ge=0.0)
    merge_center_ratio: float = Field(0.4, ge=0.0)
    merge_gap_ratio: float = Field(0.8, ge=0.0)
    merge_max_gap: float = Field(24.0, ge=0.0)
    merge_min_gap: float = -3.0

    # wide region splitting
    split_max_aspect: float = Field(10.0, ge=1.0)
    split_min_chunk: int = Field(40, ge=1)
    split_overlap_ratio: float = Field(0.6, ge=0.0, lt=1.0)
    split_min_overlap: int = Field(8, ge=0)

    # provisioning
    min_dictionary_rows: int = Field(100, ge=0)

    # execution
    max_concurrency: int = Field(1, ge=1)
    cache_blank_convention: bool = False

    @model_validator(mode="after")
    def _check_ranges(self) -> "PipelineConfig":
        if self.det_min_side > self.det_max_dim:
            raise ValueError("det_min_side must not exceed det_max_dim")
        if self.rec_min_width > self.rec_max_width:
            raise ValueError("rec_min_width must not exceed rec_max_width")
        if self.split_min_overlap >= self.split_min_chunk:
            raise ValueError("split_min_overlap must be smaller than split_min_chunk")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineConfig":
        """Build a config from defaults, ``LINEOCR_*`` variables and ``overrides``."""

        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            env_name = f"{_ENV_PREFIX}{name.upper()}"
            if env_name not in os.environ:
                continue
            default = field.default
            if isinstance(default, bool):
                values[name] = _env_truthy(env_name, default)
            elif isinstance(default, int):
                values[name] = _env_int(env_name, default)
            elif isinstance(default, float):
                values[name] = _env_float(env_name, default)
        values.update(overrides)
        return cls(**values)


DEFAULT_CONFIG = PipelineConfig()

__all__ = ["DEFAULT_CONFIG", "PipelineConfig"]
