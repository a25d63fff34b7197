# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Interfaces for the collaborators the pipeline depends on."""
from __future__ import annotations

from typing import Callable, Optional, Protocol

from .tensor import Tensor

ProgressCallback = Callable[[int], None]
BytesCallback = Callable[[int, int], None]


class InferenceBackend(Protocol):
    async def run_detection(self, tensor: Tensor) -> Tensor:
        ...

    async def run_recognition(self, tensor: Tensor) -> Tensor:
        ...

    def close(self) -> None:
        ...


class ModelProvider(Protocol):
    async def load_detection_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        ...

    async def load_recognition_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        ...

    async def load_dictionary(self) -> str:
        ...


class BackendFactory(Protocol):
    def __call__(self, detection_model: bytes, recognition_model: bytes) -> InferenceBackend:
        ...
