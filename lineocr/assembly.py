# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Reading-order sort and page/document aggregation."""
from __future__ import annotations

import re
from functools import cmp_to_key
from statistics import mean
from typing import List, Optional, Sequence, Tuple

from .language import detect_language_from_content
from .models import BBox, DocumentResult, Line, PageResult

__all__ = [
    "TABLE_COLUMN_TOLERANCE",
    "TABLE_ROW_TOLERANCE",
    "assemble_document",
    "assemble_page",
    "build_table_rows",
    "join_chunk_texts",
    "make_line",
    "reading_order_compare",
    "sort_reading_order",
]

_MULTI_SPACE = re.compile(r"\s{2,}")

# Both in percent of the page size.
TABLE_ROW_TOLERANCE = 3.2
TABLE_COLUMN_TOLERANCE = 4.0


def reading_order_compare(a: Line, b: Line) -> float:
    """Same visual row when tops differ by less than half the mean height; then left to right."""

    avg_height = (a.bbox.height + b.bbox.height) / 2
    if abs(a.bbox.y0 - b.bbox.y0) < avg_height * 0.5:
        return a.bbox.x0 - b.bbox.x0
    return a.bbox.y0 - b.bbox.y0


def sort_reading_order(lines: Sequence[Line]) -> List[Line]:
    return sorted(lines, key=cmp_to_key(reading_order_compare))


def join_chunk_texts(texts: Sequence[str]) -> str:
    return _MULTI_SPACE.sub(" ", " ".join(t for t in texts if t)).strip()


def make_line(text: str, confidence: float, bbox: BBox) -> Line:
    return Line(text=text, confidence=min(100.0, max(0.0, confidence)), bbox=bbox)


def build_table_rows(
    lines: Sequence[Line],
    page_width: int,
    page_height: int,
    row_tolerance: float = TABLE_ROW_TOLERANCE,
    column_tolerance: float = TABLE_COLUMN_TOLERANCE,
) -> List[List[str]]:
    """Lay recognised lines out as a grid of cell texts.

    Boxes are measured in percent of the page so the tolerances do not depend
    on resolution. A box joins the first row whose mean centre height is
    within ``row_tolerance``; column centres are clustered in visiting order
    and every box lands in the nearest column. Texts sharing a cell are
    joined with a space.
    """

    if not lines or page_width <= 0 or page_height <= 0:
        return []

    def _percent(line: Line) -> Tuple[float, float, float, float]:
        box = line.bbox
        return (
            box.x0 / page_width * 100,
            box.y0 / page_height * 100,
            box.width / page_width * 100,
            box.height / page_height * 100,
        )

    boxes = sorted(((_percent(line), line.text) for line in lines), key=lambda item: (item[0][1], item[0][0]))

    rows: List[List[Tuple[float, float, str]]] = []
    for (x, y, w, h), text in boxes:
        cy = y + h / 2
        cx = x + w / 2
        for row in rows:
            if abs(mean(member[1] for member in row) - cy) <= row_tolerance:
                row.append((cx, cy, text))
                break
        else:
            rows.append([(cx, cy, text)])

    columns: List[float] = []
    for row in rows:
        for cx, _, _ in row:
            if not any(abs(col - cx) <= column_tolerance for col in columns):
                columns.append(cx)
    columns.sort()

    table: List[List[str]] = []
    for row in rows:
        cells = [""] * max(1, len(columns))
        for cx, _, text in sorted(row, key=lambda member: member[0]):
            target = min(range(len(columns)), key=lambda i: abs(columns[i] - cx))
            cells[target] = f"{cells[target]} {text}" if cells[target] else text
        table.append(cells)
    return table


def assemble_page(lines: Sequence[Line], table_size: Optional[Tuple[int, int]] = None) -> PageResult:
    """Sort ``lines`` into page text; with ``table_size`` (width, height) also build table rows."""

    kept = [line for line in lines if line.text]
    if not kept:
        return PageResult(text="", confidence=0.0, lines=[])
    ordered = sort_reading_order(kept)
    table_rows = build_table_rows(ordered, *table_size) if table_size is not None else []
    return PageResult(
        text="\n".join(line.text for line in ordered),
        confidence=min(100.0, mean(line.confidence for line in ordered)),
        lines=ordered,
        table_rows=table_rows,
    )


def assemble_document(pages: Sequence[PageResult], cancelled: bool = False) -> DocumentResult:
    """Join page texts, with ``--- Page N ---`` markers when there is more than one page.

    ``N`` is the page's own ``page_number`` when set, its position otherwise.
    The document language is the dominant script of the joined page texts.
    """

    parts: List[str] = []
    for index, page in enumerate(pages, start=1):
        if len(pages) > 1:
            parts.append(f"--- Page {page.page_number or index} ---")
        parts.append(page.text)
    confidences = [page.confidence for page in pages if page.text]
    return DocumentResult(
        text="\n".join(parts).strip(),
        confidence=mean(confidences) if confidences else 0.0,
        pages=list(pages),
        cancelled=cancelled,
        language=detect_language_from_content("\n".join(page.text for page in pages)),
    )
