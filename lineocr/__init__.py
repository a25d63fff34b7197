"""Line-level OCR pipeline: heatmap detection, CTC recognition, reading order."""

from ._version import __version__
from .assembly import assemble_document, assemble_page, build_table_rows, reading_order_compare, sort_reading_order
from .config import DEFAULT_CONFIG, PipelineConfig
from .ctc import CtcDecoder, DecodeResult
from .detection import connected_components, extract_heatmap, label_heatmap
from .engine import EngineHandle, EngineLoader
from .errors import (
    DictionaryLoadError,
    InferenceError,
    LineOcrError,
    ModelLoadError,
    RegionRecognitionError,
    UnsupportedTensorLayoutError,
)
from .interfaces import BackendFactory, InferenceBackend, ModelProvider, ProgressCallback
from .language import detect_language_from_content, detect_language_hint
from .models import BBox, DocumentResult, Line, PageResult, PixelBuffer, Region
from .normalize import DetectionInput, normalize_for_detection, normalize_for_recognition
from .pipeline import (
    CancellationToken,
    DocumentPipeline,
    PagePipeline,
    PageRun,
    PageState,
    parse_page_selection,
    recognize_document,
    recognize_page,
)
from .providers import FileModelProvider
from .regions import merge_regions, split_wide_region
from .tensor import HeatmapLayout, LogitsLayout, Tensor, detect_heatmap_layout, detect_logits_layout

__all__ = [
    "BBox",
    "BackendFactory",
    "CancellationToken",
    "CtcDecoder",
    "DEFAULT_CONFIG",
    "DecodeResult",
    "DetectionInput",
    "DictionaryLoadError",
    "DocumentPipeline",
    "DocumentResult",
    "EngineHandle",
    "EngineLoader",
    "FileModelProvider",
    "HeatmapLayout",
    "InferenceBackend",
    "InferenceError",
    "Line",
    "LineOcrError",
    "LogitsLayout",
    "ModelLoadError",
    "ModelProvider",
    "PagePipeline",
    "PageResult",
    "PageRun",
    "PageState",
    "PipelineConfig",
    "PixelBuffer",
    "ProgressCallback",
    "Region",
    "RegionRecognitionError",
    "Tensor",
    "UnsupportedTensorLayoutError",
    "__version__",
    "assemble_document",
    "assemble_page",
    "build_table_rows",
    "connected_components",
    "detect_heatmap_layout",
    "detect_language_from_content",
    "detect_language_hint",
    "detect_logits_layout",
    "extract_heatmap",
    "label_heatmap",
    "merge_regions",
    "normalize_for_detection",
    "normalize_for_recognition",
    "parse_page_selection",
    "reading_order_compare",
    "recognize_document",
    "recognize_page",
    "sort_reading_order",
    "split_wide_region",
]
