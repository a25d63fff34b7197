# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Language hints from file names and recognised text."""
from __future__ import annotations

import re

__all__ = ["detect_language_from_content", "detect_language_hint"]

_ZH = re.compile("[\u4e00-\u9fa5]")
_JA = re.compile("[\u3041-\u3093\u30a1-\u30f3]")
_KO = re.compile("[\uac00-\ud7a3]")

_ZH_TEXT = re.compile("[\u4e00-\u9fff]")
_JA_TEXT = re.compile("[\u3040-\u30ff]")
_KO_TEXT = re.compile("[\uac00-\ud7af]")
_EN_TEXT = re.compile("[a-zA-Z]")


def detect_language_hint(name: str) -> str:
    if _ZH.search(name):
        return "zh"
    if _JA.search(name):
        return "ja"
    if _KO.search(name):
        return "ko"
    return "en"


def detect_language_from_content(text: str) -> str:
    """Script with the most characters; ties resolve zh, ja, ko, en."""

    counts = {
        "zh": len(_ZH_TEXT.findall(text)),
        "ja": len(_JA_TEXT.findall(text)),
        "ko": len(_KO_TEXT.findall(text)),
        "en": len(_EN_TEXT.findall(text)),
    }
    top = max(counts.values())
    if top == 0:
        return "en"
    for lang in ("zh", "ja", "ko", "en"):
        if counts[lang] == top:
            return lang
    return "en"
