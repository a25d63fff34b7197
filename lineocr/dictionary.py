# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Character dictionary parsing and the built-in fallback alphabet."""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

__all__ = ["FALLBACK_ALPHABET", "fallback_dictionary", "parse_dictionary", "resolve_dictionary"]

_DIGITS = "0123456789"
_LATIN = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
_COMMON_CJK = (
    "的一是在不了有和人这中大为上个国我以要他时来用们生到作地于出就分对成会可主发年动同工也能下过子说产种面而方后多定行学法所民得经十三之进着等部度家电力里如水化高自二理起小物现实加量都两体制机当使点从业本去把性好应开它合还因由其些然前外天政四日那社义事平形相全表间样与关各重新线内数正心反你明看原又么利比或但质气第向道命此变条只没结解问意建月公无系军很情者最立代想已通并提直题党程展五果料象员革位入常文总次品式活设及管特件长求老头基资边流路级少图山统接知较将组见计别她手角期根论运农指几九区强放决西被干做必战先回则任取据处队南给色光门即保治北造百规热领七海口东导器压志世金增争济阶油思术极交受联什认六共权收证改清己美再采转更单风切打白教速花带安场身车例真务具万每目至达走积示议声报斗完类八离华名确才科张信马节话米整空元况今集温传土许步群广石记需段研界拉林律叫且究观越织装影算低持音众书布复容儿须际商非验连断深难近矿千周委素技备半办青省列习响约支般史感劳便团往酸历市克何除消构府称太准精值号率族维划选标写存候毛亲快效斯院查江型眼王按格养易置派层片始却专状育厂京识适属圆包火住调满县局照参红细引听该铁价严首底液官德调随病苏失尔死讲配女黄推显谈罪神艺呢席含企望密批营项防举球英氧势告李台落木帮轮破亚师围注远字材排供河态封另施减树溶怎止案言士均武固叶鱼波视仅费紧爱左章早朝害续轻服试食充兵源判护司足某练差致板田降黑犯负击范继兴似余坚曲输修故城夫够送笔船占右财吃富春职觉汉画功巴跟虽杂飞检吸助升阳互初创抗考投坏策古径换未跑留钢曾端责站简述钱副尽帝射草冲承独令限阿宣环双请超微让控州良轨承晚移植朋"
)
_PUNCTUATION = ".,:;!?()[]{}\"'-_/\\|@#$%^&*+=<>~`"

FALLBACK_ALPHABET: Tuple[str, ...] = tuple(_DIGITS + _LATIN + _COMMON_CJK + _PUNCTUATION)

_ROW_SPLIT = re.compile(r"\r?\n")


def fallback_dictionary() -> List[str]:
    return list(FALLBACK_ALPHABET)


def parse_dictionary(text: str) -> List[str]:
    """One glyph per line; surrounding whitespace and blank rows are dropped."""

    rows = (row.strip() for row in _ROW_SPLIT.split(text))
    return [row for row in rows if row]


def resolve_dictionary(text: Optional[str], min_rows: int = 100) -> Tuple[List[str], bool]:
    """Return (rows, used_fallback).

    A missing dictionary or one with min_rows rows or fewer is not trusted.
    """

    if text is None:
        logger.warning("character dictionary unavailable; using built-in alphabet")
        return fallback_dictionary(), True
    rows = parse_dictionary(text)
    if len(rows) <= min_rows:
        logger.warning(
            "character dictionary has %d rows (need more than %d); using built-in alphabet",
            len(rows),
            min_rows,
        )
        return fallback_dictionary(), True
    logger.info("loaded character dictionary with %d rows", len(rows))
    return rows, False
