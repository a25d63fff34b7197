# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Model and dictionary provisioning from the local filesystem."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from .errors import DictionaryLoadError, ModelLoadError
from .interfaces import BytesCallback, ModelProvider

logger = logging.getLogger(__name__)

__all__ = ["FileModelProvider"]

_CHUNK_BYTES = 1024 * 1024

PathLike = Union[str, Path]


async def _read_with_progress(path: Path, on_bytes: Optional[BytesCallback]) -> bytes:
    try:
        total = path.stat().st_size
        chunks = []
        received = 0
        with path.open("rb") as fh:
            while True:
                chunk = await asyncio.to_thread(fh.read, _CHUNK_BYTES)
                if not chunk:
                    break
                chunks.append(chunk)
                received += len(chunk)
                if on_bytes is not None and total:
                    on_bytes(received, total)
    except OSError as exc:
        raise ModelLoadError(f"cannot read model {path}: {exc}") from exc
    return b"".join(chunks)


class FileModelProvider(ModelProvider):
    """Serve the detection model, recognition model and dictionary from disk.

    ``dictionary_path`` may be omitted, in which case the engine falls back to
    the built-in alphabet.
    """

    def __init__(
        self,
        detection_path: PathLike,
        recognition_path: PathLike,
        dictionary_path: Optional[PathLike] = None,
    ) -> None:
        self.detection_path = Path(detection_path)
        self.recognition_path = Path(recognition_path)
        self.dictionary_path = Path(dictionary_path) if dictionary_path else None

    async def load_detection_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        logger.info("loading detection model from %s", self.detection_path)
        return await _read_with_progress(self.detection_path, on_bytes)

    async def load_recognition_model(self, on_bytes: Optional[BytesCallback] = None) -> bytes:
        logger.info("loading recognition model from %s", self.recognition_path)
        return await _read_with_progress(self.recognition_path, on_bytes)

    async def load_dictionary(self) -> str:
        if self.dictionary_path is None:
            raise DictionaryLoadError("no dictionary path configured")
        try:
            return await asyncio.to_thread(self.dictionary_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise DictionaryLoadError(f"cannot read dictionary {self.dictionary_path}: {exc}") from exc
