# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Engine handle: the loaded backend, dictionary and decoder for one process.

Use :meth:`EngineHandle.create` for an explicitly owned handle, or
:class:`EngineLoader` when several callers should share one lazily loaded
handle.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .config import DEFAULT_CONFIG, PipelineConfig
from .ctc import CtcDecoder, DecodeResult
from .dictionary import resolve_dictionary
from .errors import DictionaryLoadError, InferenceError, LineOcrError, ModelLoadError
from .interfaces import BackendFactory, InferenceBackend, ModelProvider, ProgressCallback
from .tensor import Tensor
from .utils import gather_or_cancel, round_half_up

logger = logging.getLogger(__name__)

__all__ = ["EngineHandle", "EngineLoader", "MODEL_LOAD_SHARE", "validate_model_bytes"]

MODEL_LOAD_SHARE = 30


def validate_model_bytes(label: str, data: bytes) -> bytes:
    """Reject empty payloads and HTML error pages served instead of a model."""

    if not data:
        raise ModelLoadError(f"{label}: model payload is empty")
    if data[:1] == b"<":
        raise ModelLoadError(f"{label}: received HTML instead of a binary model; the host may be returning an error page")
    return data


class _LoadProgress:
    """Fold byte counts of several downloads into the 0-30% model-load band.

    Totals become known one file at a time, so only increases are reported.
    """

    def __init__(self, on_progress: Optional[ProgressCallback]) -> None:
        self.on_progress = on_progress
        self.loaded: Dict[str, int] = {}
        self.totals: Dict[str, int] = {}
        self.last = -1

    def callback(self, label: str):
        def _report(loaded: int, total: int) -> None:
            self.loaded[label] = loaded
            self.totals[label] = total
            total_bytes = sum(self.totals.values())
            if total_bytes > 0:
                self._emit(round_half_up(sum(self.loaded.values()) / total_bytes * MODEL_LOAD_SHARE))

        return _report

    def finish(self) -> None:
        self._emit(MODEL_LOAD_SHARE)

    def _emit(self, pct: int) -> None:
        pct = min(MODEL_LOAD_SHARE, pct)
        if self.on_progress is None or pct <= self.last:
            return
        self.last = pct
        self.on_progress(pct)


class EngineHandle:
    """Owns the inference backend and the dictionary-bound CTC decoder."""

    def __init__(
        self,
        backend: InferenceBackend,
        dictionary,
        config: PipelineConfig = DEFAULT_CONFIG,
        dictionary_fallback: bool = False,
    ) -> None:
        self.backend = backend
        self.config = config
        self.dictionary = list(dictionary)
        self.dictionary_fallback = dictionary_fallback
        self.decoder = CtcDecoder(self.dictionary, cache_blank_convention=config.cache_blank_convention)
        self._closed = False

    @classmethod
    async def create(
        cls,
        provider: ModelProvider,
        backend_factory: BackendFactory,
        config: PipelineConfig = DEFAULT_CONFIG,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "EngineHandle":
        progress = _LoadProgress(on_progress)

        async def _load(label: str, loader) -> bytes:
            try:
                data = await loader(progress.callback(label))
            except ModelLoadError:
                raise
            except Exception as exc:
                raise ModelLoadError(f"{label}: failed to fetch model ({exc})") from exc
            return validate_model_bytes(label, data)

        det_bytes, rec_bytes, dict_text = await gather_or_cancel(
            _load("det", provider.load_detection_model),
            _load("rec", provider.load_recognition_model),
            cls._load_dictionary(provider),
        )
        logger.info("models loaded: det=%d bytes, rec=%d bytes", len(det_bytes), len(rec_bytes))

        try:
            backend = backend_factory(det_bytes, rec_bytes)
        except LineOcrError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"failed to create inference sessions ({exc})") from exc

        dictionary, fallback = resolve_dictionary(dict_text, config.min_dictionary_rows)
        progress.finish()
        return cls(backend, dictionary, config=config, dictionary_fallback=fallback)

    @staticmethod
    async def _load_dictionary(provider: ModelProvider) -> Optional[str]:
        try:
            return await provider.load_dictionary()
        except DictionaryLoadError as exc:
            logger.warning("dictionary load failed: %s", exc)
            return None

    @property
    def closed(self) -> bool:
        return self._closed

    async def detect(self, tensor: Tensor) -> Tensor:
        return await self._run("detection", self.backend.run_detection, tensor)

    async def recognize(self, tensor: Tensor) -> Tensor:
        return await self._run("recognition", self.backend.run_recognition, tensor)

    def decode(self, logits: Tensor, lang_hint: str = "zh") -> DecodeResult:
        return self.decoder.decode(logits, lang_hint)

    async def _run(self, stage: str, fn, tensor: Tensor) -> Tensor:
        if self._closed:
            raise InferenceError(f"{stage}: engine has been terminated")
        try:
            result = await fn(tensor)
        except LineOcrError:
            raise
        except Exception as exc:
            raise InferenceError(f"{stage} inference failed: {exc}") from exc
        if not isinstance(result, Tensor):
            raise InferenceError(f"{stage} inference returned {type(result).__name__}, expected Tensor")
        return result

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.backend.close()
        logger.debug("engine closed")


class EngineLoader:
    """Lazily create one shared :class:`EngineHandle`.

    The first :meth:`get` starts loading; concurrent callers await the same
    task. A failed load is forgotten so the next call retries.
    """

    def __init__(
        self,
        provider: ModelProvider,
        backend_factory: BackendFactory,
        config: PipelineConfig = DEFAULT_CONFIG,
    ) -> None:
        self.provider = provider
        self.backend_factory = backend_factory
        self.config = config
        self._task: Optional[asyncio.Task] = None

    async def get(self, on_progress: Optional[ProgressCallback] = None) -> EngineHandle:
        if self._task is None:
            self._task = asyncio.ensure_future(
                EngineHandle.create(self.provider, self.backend_factory, self.config, on_progress)
            )
        task = self._task
        try:
            return await asyncio.shield(task)
        except BaseException:
            if self._task is task and task.done():
                self._task = None
            raise

    async def terminate(self) -> None:
        """Release the shared handle; the next :meth:`get` loads again."""

        task, self._task = self._task, None
        if task is None:
            return
        try:
            handle = await task
        except Exception as exc:
            logger.debug("engine load had failed before terminate: %s", exc)
            return
        handle.close()
