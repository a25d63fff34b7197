# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Greedy CTC decoding with blank-index disambiguation.

Model export toolchains disagree on whether the CTC blank occupies the first
or the last class slot, and the tensor shape does not tell. The decoder runs
both hypotheses over the same arg-max path and keeps the one whose text
scores better: mean character confidence, plus a bonus when the script mix
matches the language hint, minus a penalty for punctuation-heavy output
(the usual symptom of an off-by-one dictionary mapping).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .tensor import LogitsLayout, Tensor, detect_logits_layout

logger = logging.getLogger(__name__)

__all__ = [
    "BlankConvention",
    "CtcDecoder",
    "DecodeResult",
    "clean_text",
    "decode_path",
    "greedy_path",
    "is_blank_path",
    "quality_score",
    "time_major_logits",
]

_SINGLE_QUOTES = re.compile("['`\u00b4\u2018\u2019]")
_DOUBLE_QUOTES = re.compile("[\u201c\u201d]")
_DASHES = re.compile("[\u2013\u2014]")
_WHITESPACE = re.compile(r"\s+")

_LATIN_RE = re.compile(r"[A-Za-z]")
_CJK_RE = re.compile("[\u4e00-\u9fff]")
_PUNCT_RE = re.compile(r"[\"'`~!@#$%^&*()_+\-=\[\]{};:\\|,.<>/?]")

_REPLACEMENT_CHAR = "\ufffd"


class BlankConvention:
    FIRST = "first"
    LAST = "last"


@dataclass(frozen=True)
class DecodeResult:
    text: str
    confidence: float  # 0-100
    quality: float = 0.0
    blank_index: int = 0

    @classmethod
    def empty(cls) -> "DecodeResult":
        return cls(text="", confidence=0.0)


def time_major_logits(logits: Tensor) -> np.ndarray:
    """Return logits as a ``T x C`` array whatever the exported axis order."""

    layout, steps, classes = detect_logits_layout(logits.dims)
    arr = logits.as_array()
    if arr.ndim == 3:
        arr = arr[0]
    if layout is LogitsLayout.CLASS_MAJOR:
        arr = arr.T
    return arr.reshape(steps, classes)


def greedy_path(tc: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Arg-max class and its softmax probability for every time step.

    The softmax is computed stably by subtracting the per-step maximum.
    """

    best = np.argmax(tc, axis=1)
    shifted = tc - tc.max(axis=1, keepdims=True)
    denom = np.exp(shifted).sum(axis=1)
    probs = np.where(denom > 0, 1.0 / denom, 0.0)
    return best, probs


def is_blank_path(best: np.ndarray, last_blank: int) -> bool:
    """A path that never leaves one candidate blank slot carries no text.

    Read under the other convention it would spell that slot's glyph once.
    """

    if best.size == 0:
        return True
    first = int(best[0])
    return first in (0, last_blank) and bool(np.all(best == first))


def clean_text(text: str) -> str:
    text = text.strip()
    text = _SINGLE_QUOTES.sub("'", text)
    text = _DOUBLE_QUOTES.sub('"', text)
    text = _DASHES.sub("-", text)
    text = text.replace("\u2026", "...")
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def quality_score(text: str, confidence: float, lang_hint: str = "zh") -> float:
    length = max(1, len(text))
    en_ratio = len(_LATIN_RE.findall(text)) / length
    zh_ratio = len(_CJK_RE.findall(text)) / length
    punct_ratio = len(_PUNCT_RE.findall(text)) / length

    if lang_hint == "en":
        lang_score = en_ratio - zh_ratio
    elif lang_hint == "zh":
        lang_score = zh_ratio - en_ratio
    else:
        lang_score = max(en_ratio, zh_ratio) - punct_ratio

    artifact_penalty = -50.0 if punct_ratio > 0.3 else 0.0
    return confidence + lang_score * 20 - max(0.0, punct_ratio - 0.2) * 30 + artifact_penalty


def _valid_glyph(char: str) -> bool:
    return bool(char) and char != _REPLACEMENT_CHAR and len(char) == 1


def decode_path(
    best: Sequence[int],
    probs: Sequence[float],
    dictionary: Sequence[str],
    blank_index: int,
    lang_hint: str = "zh",
) -> DecodeResult:
    """Collapse repeats, drop blanks and map class indices through ``dictionary``.

    With the blank in slot 0 the dictionary is shifted by one; with the blank
    last, class ``i`` is ``dictionary[i]``.
    """

    chars: List[str] = []
    conf_sum = 0.0
    prev = -1
    offset = 1 if blank_index == 0 else 0
    for idx, prob in zip(best, probs):
        idx = int(idx)
        if idx != blank_index and idx != prev:
            dict_idx = idx - offset
            if 0 <= dict_idx < len(dictionary):
                char = dictionary[dict_idx]
                if _valid_glyph(char):
                    chars.append(char)
                    conf_sum += float(prob)
        prev = idx

    text = clean_text("".join(chars))
    confidence = (conf_sum / len(chars)) * 100 if chars else 0.0
    return DecodeResult(
        text=text,
        confidence=confidence,
        quality=quality_score(text, confidence, lang_hint),
        blank_index=blank_index,
    )


class CtcDecoder:
    """Decode recognition logits against a fixed dictionary.

    Args:
        dictionary: Glyphs in model class order (blank excluded).
        cache_blank_convention: Remember the first blank convention that wins
            with non-empty text and decode only that one afterwards. An empty
            cached decode falls back to trying both again.
    """

    def __init__(self, dictionary: Sequence[str], cache_blank_convention: bool = False) -> None:
        self.dictionary = list(dictionary)
        self.cache_blank_convention = cache_blank_convention
        self._convention: Optional[str] = None

    @property
    def convention(self) -> Optional[str]:
        return self._convention

    def reset(self) -> None:
        self._convention = None

    def decode(self, logits: Tensor, lang_hint: str = "zh") -> DecodeResult:
        tc = time_major_logits(logits)
        steps, classes = tc.shape
        if not steps or not classes:
            return DecodeResult.empty()

        best, probs = greedy_path(tc)
        last_blank = classes - 1
        if is_blank_path(best, last_blank):
            return DecodeResult.empty()

        if self.cache_blank_convention and self._convention is not None:
            blank = 0 if self._convention == BlankConvention.FIRST else last_blank
            cached = decode_path(best, probs, self.dictionary, blank, lang_hint)
            if cached.text:
                return cached

        first = decode_path(best, probs, self.dictionary, 0, lang_hint)
        last = decode_path(best, probs, self.dictionary, last_blank, lang_hint)
        winner = first if first.quality >= last.quality else last

        if self.cache_blank_convention and winner.text and self._convention is None:
            self._convention = BlankConvention.FIRST if winner is first else BlankConvention.LAST
            logger.info("caching CTC blank convention: %s", self._convention)
        return winner
