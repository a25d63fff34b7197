# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Composable line OCR pipeline: detect -> merge -> split -> recognise -> assemble."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Union

from PIL import Image

from .assembly import assemble_document, assemble_page, join_chunk_texts, make_line
from .ctc import DecodeResult
from .detection import label_heatmap
from .engine import MODEL_LOAD_SHARE, EngineHandle, EngineLoader
from .errors import RegionRecognitionError
from .interfaces import ProgressCallback
from .models import BBox, DocumentResult, Line, PageResult, Region
from .normalize import ImageLike, as_image, normalize_for_detection, normalize_for_recognition
from .regions import merge_regions, split_wide_region
from .utils import gather_or_cancel, round_half_up

logger = logging.getLogger(__name__)

__all__ = [
    "CancellationToken",
    "DocumentPipeline",
    "PagePipeline",
    "PageRun",
    "PageState",
    "parse_page_selection",
    "recognize_document",
    "recognize_page",
]

DETECTION_DONE = 45
RECOGNITION_SHARE = 100 - DETECTION_DONE


class PageState(str, Enum):
    IDLE = "idle"
    DETECTION_RUNNING = "detection_running"
    REGIONS_READY = "regions_ready"
    RECOGNIZING_REGION = "recognizing_region"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PageRun:
    """Bookkeeping for one page: current state, visited states, region counts."""

    state: PageState = PageState.IDLE
    history: List[PageState] = field(default_factory=lambda: [PageState.IDLE])
    regions: int = 0
    skipped: int = 0
    fallback: bool = False

    def advance(self, state: PageState) -> None:
        logger.debug("page state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)


class CancellationToken:
    """Cooperative abort flag, checked only between pages."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def _crop(image: Image.Image, region: Region) -> Image.Image:
    if region.x >= image.width or region.y >= image.height:
        raise RegionRecognitionError(
            f"region {region.x},{region.y} {region.w}x{region.h} lies outside the "
            f"{image.width}x{image.height} image"
        )
    return image.crop((region.x, region.y, region.right, region.bottom))


@dataclass
class PagePipeline:
    """Recognise one rasterised page.

    ``engine`` may be a loaded :class:`EngineHandle` or an :class:`EngineLoader`,
    in which case model loading reports into the first 30% of progress.
    Regions are recognised one at a time unless the engine config sets
    ``max_concurrency`` above 1; line order always comes from the reading
    order sort, never from completion order. With ``table_mode`` the page
    result also carries the lines laid out as table rows.
    """

    engine: Union[EngineHandle, EngineLoader]
    lang_hint: str = "zh"
    table_mode: bool = False

    async def _resolve_engine(self, on_progress: Optional[ProgressCallback]) -> EngineHandle:
        if isinstance(self.engine, EngineLoader):
            return await self.engine.get(on_progress)
        return self.engine

    async def detect_regions(self, engine: EngineHandle, image: Image.Image) -> List[Region]:
        config = engine.config
        prep = normalize_for_detection(image, config)
        output = await engine.detect(prep.tensor)
        regions = label_heatmap(output, prep.scale_x, prep.scale_y, image.width, image.height, config)
        merged = merge_regions(regions, config)
        if len(merged) > config.max_regions:
            logger.warning("capping %d regions at %d", len(merged), config.max_regions)
        return merged[: config.max_regions]

    async def recognize_region(self, engine: EngineHandle, crop: Image.Image) -> DecodeResult:
        tensor = normalize_for_recognition(crop, engine.config)
        logits = await engine.recognize(tensor)
        return engine.decode(logits, self.lang_hint)

    async def recognize_line(self, engine: EngineHandle, image: Image.Image, region: Region) -> Optional[Line]:
        """Recognise ``region``, chunking it first when it is too wide."""

        texts: List[str] = []
        confidences: List[float] = []
        for piece in split_wide_region(region, engine.config):
            result = await self.recognize_region(engine, _crop(image, piece))
            if result.text:
                texts.append(result.text)
                confidences.append(result.confidence)
        text = join_chunk_texts(texts)
        if not text:
            return None
        return make_line(text, sum(confidences) / len(confidences), region.to_bbox())

    async def _recognize_or_skip(
        self, engine: EngineHandle, image: Image.Image, region: Region, run: PageRun
    ) -> Optional[Line]:
        try:
            return await self.recognize_line(engine, image, region)
        except RegionRecognitionError as exc:
            run.skipped += 1
            logger.warning("skipping region %s: %s", region.model_dump(), exc)
            return None

    async def _recognize_regions(
        self,
        engine: EngineHandle,
        image: Image.Image,
        regions: Sequence[Region],
        run: PageRun,
        report: ProgressCallback,
    ) -> List[Line]:
        total = len(regions)
        done = 0

        def _tick() -> None:
            nonlocal done
            done += 1
            report(DETECTION_DONE + round_half_up(RECOGNITION_SHARE * done / total))

        limit = engine.config.max_concurrency
        if limit <= 1:
            lines: List[Line] = []
            for region in regions:
                line = await self._recognize_or_skip(engine, image, region, run)
                if line is not None:
                    lines.append(line)
                _tick()
            return lines

        semaphore = asyncio.Semaphore(limit)

        async def _worker(region: Region) -> Optional[Line]:
            async with semaphore:
                line = await self._recognize_or_skip(engine, image, region, run)
            _tick()
            return line

        results = await gather_or_cancel(*(_worker(region) for region in regions))
        return [line for line in results if line is not None]

    async def _recognize_whole_image(self, engine: EngineHandle, image: Image.Image, run: PageRun) -> List[Line]:
        run.fallback = True
        try:
            result = await self.recognize_region(engine, image)
        except RegionRecognitionError as exc:
            logger.warning("whole-image fallback failed: %s", exc)
            return []
        if not result.text:
            return []
        return [make_line(result.text, result.confidence, BBox(x0=0, y0=0, x1=image.width, y1=image.height))]

    async def process(
        self,
        source: ImageLike,
        on_progress: Optional[ProgressCallback] = None,
        run: Optional[PageRun] = None,
    ) -> PageResult:
        run = run if run is not None else PageRun()
        last = -1

        # Each value is reported once, in increasing order.
        def report(pct: int) -> None:
            nonlocal last
            pct = int(max(0, min(100, pct)))
            if pct <= last:
                return
            last = pct
            if on_progress is not None:
                on_progress(pct)

        try:
            engine = await self._resolve_engine(report)
            report(MODEL_LOAD_SHARE)
            image = as_image(source)

            run.advance(PageState.DETECTION_RUNNING)
            regions = await self.detect_regions(engine, image)
            run.regions = len(regions)
            run.advance(PageState.REGIONS_READY)
            report(DETECTION_DONE)

            run.advance(PageState.RECOGNIZING_REGION)
            if regions:
                lines = await self._recognize_regions(engine, image, regions, run, report)
            else:
                logger.debug("no regions detected; recognising the whole image")
                lines = await self._recognize_whole_image(engine, image, run)

            run.advance(PageState.ASSEMBLING)
            page = assemble_page(lines, table_size=(image.width, image.height) if self.table_mode else None)
        except Exception:
            run.advance(PageState.FAILED)
            raise

        run.advance(PageState.DONE)
        report(100)
        logger.debug(
            "page done: %d regions, %d lines, %d skipped, fallback=%s",
            run.regions,
            len(page.lines),
            run.skipped,
            run.fallback,
        )
        return page


def parse_page_selection(selected: Optional[str], count: int) -> List[int]:
    """Turn ``"1,3-5"`` style input into sorted, unique 1-based page numbers.

    Ranges are clamped to ``1..count`` and may be written backwards; single
    numbers outside that span and malformed tokens are dropped. Empty input
    selects every page.
    """

    tokens = [token.strip() for token in (selected or "").split(",") if token.strip()]
    if not tokens:
        return list(range(1, count + 1))

    chosen = set()
    for token in tokens:
        parts = token.split("-")
        try:
            bounds = [int(part) for part in parts]
        except ValueError:
            logger.debug("ignoring page selection token %r", token)
            continue
        if len(bounds) == 2:
            chosen.update(range(max(1, min(bounds)), min(count, max(bounds)) + 1))
        elif len(bounds) == 1 and 1 <= bounds[0] <= count:
            chosen.add(bounds[0])
        else:
            logger.debug("ignoring page selection token %r", token)
    return sorted(chosen)


@dataclass
class DocumentPipeline:
    """Run a :class:`PagePipeline` over several pages, honouring cancellation between pages."""

    page_pipeline: PagePipeline

    async def process(
        self,
        pages: Sequence[ImageLike],
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        selection: Optional[str] = None,
    ) -> DocumentResult:
        """Recognise the selected ``pages``; every result keeps its 1-based source page number."""

        numbers = parse_page_selection(selection, len(pages))
        results: List[PageResult] = []
        cancelled = False
        count = len(numbers)
        for index, number in enumerate(numbers):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("document run cancelled after %d of %d pages", index, count)
                cancelled = True
                break

            def _page_progress(pct: int, index: int = index) -> None:
                if on_progress is not None:
                    on_progress(round_half_up((index + pct / 100) / count * 100))

            page = await self.page_pipeline.process(pages[number - 1], on_progress=_page_progress)
            results.append(page.model_copy(update={"page_number": number}))
        return assemble_document(results, cancelled=cancelled)


async def recognize_page(
    engine: Union[EngineHandle, EngineLoader],
    source: ImageLike,
    lang_hint: str = "zh",
    on_progress: Optional[ProgressCallback] = None,
    table_mode: bool = False,
) -> PageResult:
    pipeline = PagePipeline(engine=engine, lang_hint=lang_hint, table_mode=table_mode)
    return await pipeline.process(source, on_progress=on_progress)


async def recognize_document(
    engine: Union[EngineHandle, EngineLoader],
    pages: Sequence[ImageLike],
    lang_hint: str = "zh",
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    selection: Optional[str] = None,
    table_mode: bool = False,
) -> DocumentResult:
    pipeline = DocumentPipeline(page_pipeline=PagePipeline(engine=engine, lang_hint=lang_hint, table_mode=table_mode))
    return await pipeline.process(pages, on_progress=on_progress, cancel_token=cancel_token, selection=selection)
