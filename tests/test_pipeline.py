# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

import asyncio

import numpy as np
import pytest
from PIL import Image, ImageDraw

from lineocr import (
    BBox,
    CancellationToken,
    EngineHandle,
    EngineLoader,
    InferenceError,
    PagePipeline,
    PageResult,
    PageRun,
    PageState,
    PipelineConfig,
    PixelBuffer,
    RegionRecognitionError,
    Tensor,
    UnsupportedTensorLayoutError,
    recognize_document,
    parse_page_selection,
    recognize_page,
)
from lineocr.dictionary import FALLBACK_ALPHABET
from lineocr.mocks import (
    InMemoryModelProvider,
    StubInferenceBackend,
    encode_text_logits,
    heatmap_tensor,
    mock_backend_factory,
)

# A 200x100 page is stretched to a 192x96 detection input.
GRID_SHAPE = (96, 192)


def _white_page():
    return Image.new("RGB", (200, 100), "white")


def _ink_page():
    image = _white_page()
    ImageDraw.Draw(image).rectangle((20, 30, 180, 50), fill="black")
    return image


def _bars(*rows, cols=(20, 150)):
    grid = np.zeros(GRID_SHAPE, dtype=np.float32)
    for top, bottom in rows:
        grid[top : bottom + 1, cols[0] : cols[1] + 1] = 0.85
    return heatmap_tensor(grid)


def _logits(text):
    return encode_text_logits(text, FALLBACK_ALPHABET)


def _handle(detection, recognition, config=None):
    backend = StubInferenceBackend(detection=detection, recognition=recognition)
    return EngineHandle(backend, FALLBACK_ALPHABET, config=config or PipelineConfig())


def _mock_handle():
    return asyncio.run(EngineHandle.create(InMemoryModelProvider(), mock_backend_factory))


def test_blank_page_yields_empty_result_via_whole_image_fallback():
    run = PageRun()

    page = asyncio.run(PagePipeline(engine=_mock_handle()).process(_white_page(), run=run))

    assert page == PageResult()
    assert page.confidence == 0.0
    assert run.fallback is True
    assert run.regions == 0
    assert run.state is PageState.DONE


def test_two_lines_are_detected_and_read_in_order():
    handle = _handle(_bars((20, 29), (60, 69)), [_logits("文字"), _logits("中国")])
    seen = []

    page = asyncio.run(recognize_page(handle, _white_page(), on_progress=seen.append))

    assert page.text == "文字\n中国"
    assert [line.bbox for line in page.lines] == [
        BBox(x0=18, y0=18, x1=159, y1=33),
        BBox(x0=18, y0=59, x1=159, y1=75),
    ]
    assert page.confidence == pytest.approx(100.0, abs=0.1)
    assert seen == [30, 45, 73, 100]
    assert len(handle.backend.detection_calls) == 1
    assert handle.backend.detection_calls[0].dims == (1, 3, 96, 192)
    assert all(t.dims == (1, 3, 48, 320) for t in handle.backend.recognition_calls)


def test_page_run_records_state_history():
    handle = _handle(_bars((20, 29)), _logits("文"))
    run = PageRun()

    asyncio.run(PagePipeline(engine=handle).process(_white_page(), run=run))

    assert run.history == [
        PageState.IDLE,
        PageState.DETECTION_RUNNING,
        PageState.REGIONS_READY,
        PageState.RECOGNIZING_REGION,
        PageState.ASSEMBLING,
        PageState.DONE,
    ]
    assert run.regions == 1
    assert run.fallback is False


def test_pixel_buffer_pages_are_accepted():
    handle = _handle(_bars((20, 29)), _logits("文"))
    buffer = PixelBuffer.from_image(_white_page())

    page = asyncio.run(recognize_page(handle, buffer))

    assert page.text == "文"


def test_unreadable_region_is_skipped():
    calls = []

    def recognition(tensor):
        calls.append(tensor)
        if len(calls) == 1:
            raise RegionRecognitionError("crop could not be prepared")
        return _logits("中国")

    handle = _handle(_bars((20, 29), (60, 69)), recognition)
    run = PageRun()

    page = asyncio.run(PagePipeline(engine=handle).process(_white_page(), run=run))

    assert page.text == "中国"
    assert run.skipped == 1
    assert run.state is PageState.DONE


def test_blank_recognition_drops_the_line():
    handle = _handle(_bars((20, 29), (60, 69)), [_logits(""), _logits("中国")])

    page = asyncio.run(recognize_page(handle, _white_page()))

    assert [line.text for line in page.lines] == ["中国"]


def test_inference_failure_aborts_the_page():
    def recognition(tensor):
        raise ValueError("backend crashed")

    handle = _handle(_bars((20, 29)), recognition)
    run = PageRun()

    with pytest.raises(InferenceError):
        asyncio.run(PagePipeline(engine=handle).process(_white_page(), run=run))

    assert run.state is PageState.FAILED


def test_unsupported_detection_layout_aborts_the_page():
    bad = Tensor.from_array(np.zeros((1, 2, 96, 192)))
    handle = _handle(bad, _logits("文"))
    run = PageRun()

    with pytest.raises(UnsupportedTensorLayoutError):
        asyncio.run(PagePipeline(engine=handle).process(_white_page(), run=run))

    assert run.history[-1] is PageState.FAILED


def test_wide_region_is_recognised_in_chunks():
    handle = _handle(_bars((20, 29), cols=(5, 185)), [_logits("文字"), _logits("中国")])

    page = asyncio.run(recognize_page(handle, _white_page()))

    assert len(handle.backend.recognition_calls) == 2
    (line,) = page.lines
    assert line.text == "文字 中国"
    assert line.bbox == BBox(x0=2, y0=18, x1=196, y1=33)


def test_region_count_is_capped_after_merging():
    handle = _handle(_bars((20, 29), (60, 69)), _logits("文"), config=PipelineConfig(max_regions=1))

    page = asyncio.run(recognize_page(handle, _white_page()))

    assert len(page.lines) == 1
    assert page.lines[0].bbox.y0 == 18


class SlowFirstBackend(StubInferenceBackend):
    """Recognition finishes out of order: the first call is the slowest."""

    def __init__(self, detection, outputs):
        super().__init__(detection=detection, recognition=outputs)
        self.in_flight = 0
        self.peak = 0

    async def run_recognition(self, tensor):
        index = len(self.recognition_calls)
        self.recognition_calls.append(tensor)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.05 if index == 0 else 0)
        self.in_flight -= 1
        return self.recognition[index]


def test_concurrent_recognition_keeps_reading_order():
    backend = SlowFirstBackend(
        _bars((10, 19), (40, 49), (70, 79)),
        [_logits("中"), _logits("国"), _logits("文")],
    )
    handle = EngineHandle(backend, FALLBACK_ALPHABET, config=PipelineConfig(max_concurrency=3))
    seen = []

    page = asyncio.run(recognize_page(handle, _white_page(), on_progress=seen.append))

    assert page.text == "中\n国\n文"
    assert backend.peak >= 2
    assert seen == [30, 45, 63, 82, 100]



class FailFastBackend(StubInferenceBackend):
    """The first recognition crashes while the others are still running."""

    def __init__(self, detection):
        super().__init__(detection=detection, recognition=_logits("文"))
        self.completed = 0

    async def run_recognition(self, tensor):
        index = len(self.recognition_calls)
        self.recognition_calls.append(tensor)
        if index == 0:
            await asyncio.sleep(0)
            raise ValueError("backend crashed")
        await asyncio.sleep(0.05)
        self.completed += 1
        return self.recognition


def test_concurrent_failure_cancels_sibling_regions():
    backend = FailFastBackend(_bars((10, 19), (40, 49), (70, 79)))
    handle = EngineHandle(backend, FALLBACK_ALPHABET, config=PipelineConfig(max_concurrency=3))
    run = PageRun()
    seen = []

    async def scenario():
        with pytest.raises(InferenceError):
            await PagePipeline(engine=handle).process(_white_page(), on_progress=seen.append, run=run)
        # Long enough for any surviving sibling to finish.
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert len(backend.recognition_calls) == 3
    assert backend.completed == 0
    assert run.state is PageState.FAILED
    assert seen == [30, 45]


def test_table_mode_lays_lines_out_in_rows_and_columns():
    # Two rows of two cells each: left and right halves of the page.
    grid = np.zeros(GRID_SHAPE, dtype=np.float32)
    for top, bottom in ((20, 29), (60, 69)):
        grid[top : bottom + 1, 10:70] = 0.85
        grid[top : bottom + 1, 120:180] = 0.85
    handle = _handle(heatmap_tensor(grid), [_logits("文"), _logits("字"), _logits("中"), _logits("国")])

    page = asyncio.run(recognize_page(handle, _white_page(), table_mode=True))

    assert page.text == "文\n字\n中\n国"
    assert page.table_rows == [["文", "字"], ["中", "国"]]


def test_table_rows_are_empty_outside_table_mode():
    handle = _handle(_bars((20, 29)), _logits("文"))

    page = asyncio.run(recognize_page(handle, _white_page()))

    assert page.table_rows == []

def test_loader_progress_covers_model_loading():
    loader = EngineLoader(InMemoryModelProvider(), mock_backend_factory)
    seen = []

    async def scenario():
        try:
            return await recognize_page(loader, _ink_page(), on_progress=seen.append)
        finally:
            await loader.terminate()

    page = asyncio.run(scenario())

    assert page.text == "文字"
    assert seen == sorted(seen)
    assert seen[0] < 30
    assert 30 in seen and 45 in seen
    assert seen[-1] == 100


def test_document_pages_are_separated():
    handle = _mock_handle()
    seen = []

    doc = asyncio.run(recognize_document(handle, [_ink_page(), _ink_page()], on_progress=seen.append))

    assert doc.text == "--- Page 1 ---\n文字\n--- Page 2 ---\n文字"
    assert len(doc.pages) == 2
    assert doc.cancelled is False
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_cancellation_is_honoured_between_pages():
    handle = _mock_handle()
    token = CancellationToken()

    def on_progress(pct):
        if pct >= 50:
            token.cancel()

    doc = asyncio.run(
        recognize_document(handle, [_ink_page(), _ink_page()], on_progress=on_progress, cancel_token=token)
    )

    assert doc.cancelled is True
    assert len(doc.pages) == 1
    assert doc.text == "文字"


def test_cancelled_before_start_returns_empty_document():
    token = CancellationToken()
    token.cancel()

    doc = asyncio.run(recognize_document(_mock_handle(), [_ink_page()], cancel_token=token))

    assert doc.cancelled is True
    assert doc.pages == []
    assert doc.text == ""


@pytest.mark.parametrize(
    "selected, expected",
    [
        ("", [1, 2, 3, 4, 5]),
        (None, [1, 2, 3, 4, 5]),
        ("2", [2]),
        ("1, 3-4", [1, 3, 4]),
        ("4-2", [2, 3, 4]),
        ("0-9", [1, 2, 3, 4, 5]),
        ("5,1,5,3", [1, 3, 5]),
        ("7, x, 2-b, 1-2-3", []),
    ],
)
def test_page_selection_parsing(selected, expected):
    assert parse_page_selection(selected, 5) == expected


def test_selected_pages_keep_their_source_numbers():
    handle = _mock_handle()
    pages = [_white_page(), _ink_page(), _ink_page()]

    doc = asyncio.run(recognize_document(handle, pages, selection="2-3"))

    assert [page.page_number for page in doc.pages] == [2, 3]
    assert doc.text == "--- Page 2 ---\n文字\n--- Page 3 ---\n文字"
    assert doc.language == "zh"


def test_single_selected_page_has_no_separator():
    handle = _mock_handle()

    doc = asyncio.run(recognize_document(handle, [_ink_page(), _white_page()], selection="2"))

    assert len(doc.pages) == 1
    assert doc.pages[0].page_number == 2
    assert doc.text == ""
