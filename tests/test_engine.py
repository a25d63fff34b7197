# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

import asyncio

import numpy as np
import pytest

from lineocr import (
    EngineHandle,
    EngineLoader,
    FileModelProvider,
    InferenceError,
    ModelLoadError,
    RegionRecognitionError,
    Tensor,
)
from lineocr.dictionary import FALLBACK_ALPHABET
from lineocr.mocks import InMemoryModelProvider, StubInferenceBackend, mock_backend_factory


def _dummy_tensor():
    return Tensor.from_array(np.zeros((1, 1, 4, 4)))


class FlakyProvider(InMemoryModelProvider):
    """Fails the first detection model fetch, then behaves."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def load_detection_model(self, on_bytes=None):
        if self.failures:
            self.failures -= 1
            raise OSError("connection reset")
        return await super().load_detection_model(on_bytes)


def test_create_reports_monotonic_load_progress():
    seen = []

    handle = asyncio.run(EngineHandle.create(InMemoryModelProvider(), mock_backend_factory, on_progress=seen.append))

    assert seen
    assert seen == sorted(seen)
    assert seen[-1] == 30
    assert max(seen) == 30
    assert handle.dictionary == list(FALLBACK_ALPHABET)
    assert handle.dictionary_fallback is False


def test_html_error_page_is_rejected():
    provider = InMemoryModelProvider(detection_model=b"<!DOCTYPE html><html>404</html>")

    with pytest.raises(ModelLoadError, match="HTML"):
        asyncio.run(EngineHandle.create(provider, mock_backend_factory))


def test_empty_model_is_rejected():
    provider = InMemoryModelProvider(recognition_model=b"")

    with pytest.raises(ModelLoadError, match="empty"):
        asyncio.run(EngineHandle.create(provider, mock_backend_factory))


def test_fetch_failure_is_wrapped():
    with pytest.raises(ModelLoadError, match="connection reset"):
        asyncio.run(EngineHandle.create(FlakyProvider(), mock_backend_factory))


class SlowRecognitionProvider(InMemoryModelProvider):
    """Detection fetch fails at once; recognition fetch is still in flight."""

    def __init__(self):
        super().__init__()
        self.recognition_finished = False

    async def load_detection_model(self, on_bytes=None):
        raise OSError("connection reset")

    async def load_recognition_model(self, on_bytes=None):
        await asyncio.sleep(0.05)
        self.recognition_finished = True
        return await super().load_recognition_model(on_bytes)


def test_failed_load_cancels_remaining_fetches():
    provider = SlowRecognitionProvider()

    async def scenario():
        with pytest.raises(ModelLoadError, match="det"):
            await EngineHandle.create(provider, mock_backend_factory)
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert provider.recognition_finished is False


def test_backend_factory_failure_is_wrapped():
    def broken_factory(det, rec):
        raise RuntimeError("bad graph")

    with pytest.raises(ModelLoadError, match="bad graph"):
        asyncio.run(EngineHandle.create(InMemoryModelProvider(), broken_factory))


def test_missing_dictionary_falls_back_to_builtin_alphabet():
    handle = asyncio.run(EngineHandle.create(InMemoryModelProvider(dictionary=None), mock_backend_factory))

    assert handle.dictionary_fallback is True
    assert handle.dictionary == list(FALLBACK_ALPHABET)


def test_short_dictionary_falls_back_to_builtin_alphabet():
    short = "\n".join("abcdefghij")

    handle = asyncio.run(EngineHandle.create(InMemoryModelProvider(dictionary=short), mock_backend_factory))

    assert handle.dictionary_fallback is True


def test_loader_shares_one_load_between_concurrent_callers():
    provider = InMemoryModelProvider()
    loader = EngineLoader(provider, mock_backend_factory)

    async def scenario():
        return await asyncio.gather(loader.get(), loader.get(), loader.get())

    first, second, third = asyncio.run(scenario())

    assert first is second is third
    assert provider.loads == 2


def test_loader_retries_after_failed_load():
    loader = EngineLoader(FlakyProvider(), mock_backend_factory)

    async def scenario():
        with pytest.raises(ModelLoadError):
            await loader.get()
        return await loader.get()

    handle = asyncio.run(scenario())

    assert isinstance(handle, EngineHandle)


def test_terminate_closes_backend_and_next_get_reloads():
    provider = InMemoryModelProvider()
    loader = EngineLoader(provider, mock_backend_factory)

    async def scenario():
        handle = await loader.get()
        await loader.terminate()
        with pytest.raises(InferenceError):
            await handle.detect(_dummy_tensor())
        again = await loader.get()
        return handle, again

    handle, again = asyncio.run(scenario())

    assert handle.closed
    assert handle.backend.closed
    assert again is not handle
    assert provider.loads == 4


def test_backend_exceptions_become_inference_errors():
    def explode(tensor):
        raise ValueError("shape mismatch")

    handle = EngineHandle(StubInferenceBackend(detection=explode, recognition=lambda t: "not a tensor"), "ab")

    with pytest.raises(InferenceError, match="shape mismatch"):
        asyncio.run(handle.detect(_dummy_tensor()))
    with pytest.raises(InferenceError, match="expected Tensor"):
        asyncio.run(handle.recognize(_dummy_tensor()))


def test_pipeline_errors_pass_through_unwrapped():
    def unreadable(tensor):
        raise RegionRecognitionError("bad crop")

    handle = EngineHandle(StubInferenceBackend(detection=_dummy_tensor(), recognition=unreadable), "ab")

    with pytest.raises(RegionRecognitionError):
        asyncio.run(handle.recognize(_dummy_tensor()))


def test_file_provider_reads_models_and_dictionary(tmp_path):
    det = tmp_path / "det.onnx"
    rec = tmp_path / "rec.onnx"
    vocab = tmp_path / "keys.txt"
    det.write_bytes(b"\x08\x07" + b"d" * 64)
    rec.write_bytes(b"\x08\x07" + b"r" * 64)
    vocab.write_text("\r\n".join(chr(0x4E00 + i) for i in range(150)), encoding="utf-8")

    seen = []
    provider = FileModelProvider(det, rec, vocab)
    handle = asyncio.run(EngineHandle.create(provider, mock_backend_factory, on_progress=seen.append))

    assert handle.dictionary_fallback is False
    assert len(handle.dictionary) == 150
    assert seen[-1] == 30


def test_file_provider_without_dictionary_falls_back(tmp_path):
    det = tmp_path / "det.onnx"
    rec = tmp_path / "rec.onnx"
    det.write_bytes(b"\x08det")
    rec.write_bytes(b"\x08rec")

    handle = asyncio.run(EngineHandle.create(FileModelProvider(det, rec), mock_backend_factory))

    assert handle.dictionary_fallback is True


def test_file_provider_missing_model_raises(tmp_path):
    provider = FileModelProvider(tmp_path / "missing.onnx", tmp_path / "rec.onnx")

    with pytest.raises(ModelLoadError):
        asyncio.run(EngineHandle.create(provider, mock_backend_factory))
