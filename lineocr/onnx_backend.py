# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Inference backend running the two models with ONNX Runtime on CPU.

``onnxruntime`` is an optional dependency (``pip install -e '.[onnx]'``); it is
imported only when a backend is built.
"""
from __future__ import annotations

import asyncio
import importlib
import importlib.util
import logging
import os
from typing import Any

import numpy as np

from .interfaces import InferenceBackend
from .tensor import Tensor

logger = logging.getLogger(__name__)

__all__ = ["OnnxRuntimeBackend", "onnx_backend_factory"]

_MAX_THREADS = 4


def _import_onnxruntime() -> Any:
    spec = importlib.util.find_spec("onnxruntime")
    if spec is None:  # pragma: no cover - optional dependency
        raise RuntimeError("onnxruntime is required for OnnxRuntimeBackend; install with `pip install -e '.[onnx]'`")
    return importlib.import_module("onnxruntime")


class OnnxRuntimeBackend(InferenceBackend):
    """Hold one detection and one recognition session built from model bytes."""

    def __init__(self, detection_model: bytes, recognition_model: bytes, threads: int | None = None) -> None:
        ort = _import_onnxruntime()
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.intra_op_num_threads = threads or max(1, min(_MAX_THREADS, os.cpu_count() or 2))
        providers = ["CPUExecutionProvider"]
        self._det = ort.InferenceSession(detection_model, sess_options=options, providers=providers)
        self._rec = ort.InferenceSession(recognition_model, sess_options=options, providers=providers)
        logger.info("onnxruntime sessions ready (%d threads)", options.intra_op_num_threads)

    @staticmethod
    def _run_session(session: Any, tensor: Tensor) -> Tensor:
        feeds = {session.get_inputs()[0].name: tensor.as_array()}
        output_name = session.get_outputs()[0].name
        (result,) = session.run([output_name], feeds)
        return Tensor.from_array(np.asarray(result, dtype=np.float32))

    async def run_detection(self, tensor: Tensor) -> Tensor:
        return await asyncio.to_thread(self._run_session, self._det, tensor)

    async def run_recognition(self, tensor: Tensor) -> Tensor:
        return await asyncio.to_thread(self._run_session, self._rec, tensor)

    def close(self) -> None:
        self._det = None
        self._rec = None


def onnx_backend_factory(detection_model: bytes, recognition_model: bytes) -> OnnxRuntimeBackend:
    return OnnxRuntimeBackend(detection_model, recognition_model)
