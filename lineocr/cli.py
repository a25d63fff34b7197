# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Command-line entry for the line OCR pipeline.

Recognises one or more page images as a single document and emits the
:class:`~lineocr.models.DocumentResult` as JSON. ``--use-mocks`` swaps in the
deterministic stub backend so the wiring can be smoke-tested without models.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Sequence

from PIL import Image

from .config import PipelineConfig
from .engine import EngineLoader
from .language import detect_language_hint
from .mocks import InMemoryModelProvider, mock_backend_factory
from .models import DocumentResult
from .pipeline import recognize_document
from .providers import FileModelProvider

logger = logging.getLogger("lineocr")


def _load_images(paths: Iterable[str]) -> List[Image.Image]:
    images = []
    for p in paths:
        with Image.open(Path(p).as_posix()) as img:
            img.load()
            images.append(img.convert("RGBA"))
    return images


def build_engine_loader(
    *,
    use_mocks: bool = False,
    det_model: str | None = None,
    rec_model: str | None = None,
    dictionary: str | None = None,
    config: PipelineConfig | None = None,
) -> EngineLoader:
    config = config or PipelineConfig.from_env()
    if use_mocks:
        return EngineLoader(InMemoryModelProvider(), mock_backend_factory, config)

    if not det_model or not rec_model:
        raise SystemExit("Provide --det-model and --rec-model (or --use-mocks)")
    from .onnx_backend import onnx_backend_factory

    provider = FileModelProvider(det_model, rec_model, dictionary)
    return EngineLoader(provider, onnx_backend_factory, config)


def _configure_logging(level: str) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run detection + CTC recognition over page images")
    parser.add_argument("--images", nargs="+", required=True, help="Page images, processed in order")
    parser.add_argument("--det-model", help="Detection model file (heatmap head)")
    parser.add_argument("--rec-model", help="Recognition model file (CTC head)")
    parser.add_argument("--dict", dest="dictionary", help="Newline-delimited character dictionary")
    parser.add_argument("--lang", default=None, help="Language hint (zh/en/ja/ko); guessed from the file name if omitted")
    parser.add_argument("--max-concurrency", type=int, default=None, help="Regions recognised concurrently")
    parser.add_argument("--cache-blank", action="store_true", help="Reuse the first winning CTC blank convention")
    parser.add_argument("--pages", default=None, help="Pages to recognise, e.g. '1,3-5' (default: all)")
    parser.add_argument("--table", action="store_true", help="Also lay each page's lines out as table rows")
    parser.add_argument("--out", default="-", help="Output file path or '-' for stdout")
    parser.add_argument("--log-level", default="WARNING", help="Logging level for the lineocr logger")
    parser.add_argument(
        "--use-mocks",
        action="store_true",
        help="Use the stub backend and in-memory models for fast smoke tests",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


async def _run(
    loader: EngineLoader,
    images: List[Image.Image],
    lang: str,
    selection: str | None = None,
    table_mode: bool = False,
) -> DocumentResult:
    try:
        return await recognize_document(loader, images, lang_hint=lang, selection=selection, table_mode=table_mode)
    finally:
        await loader.terminate()


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    _configure_logging(args.log_level)

    overrides = {}
    if args.max_concurrency is not None:
        overrides["max_concurrency"] = max(1, args.max_concurrency)
    if args.cache_blank:
        overrides["cache_blank_convention"] = True
    config = PipelineConfig.from_env(**overrides)

    loader = build_engine_loader(
        use_mocks=args.use_mocks,
        det_model=args.det_model,
        rec_model=args.rec_model,
        dictionary=args.dictionary,
        config=config,
    )
    lang = args.lang or detect_language_hint(Path(args.images[0]).name)
    images = _load_images(args.images)

    result = asyncio.run(_run(loader, images, lang, selection=args.pages, table_mode=args.table))
    payload = json.dumps(result.model_dump(), ensure_ascii=False, indent=2)

    if args.out == "-":
        print(payload)
    else:
        Path(args.out).write_text(payload, encoding="utf-8")


if __name__ == "__main__":  # pragma: no cover
    main()
