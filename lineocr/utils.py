# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2024 ZOCR contributors

"""Small numeric and asyncio helpers shared across stages."""
from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable, List

__all__ = ["clamp", "gather_or_cancel", "round_half_up"]


def round_half_up(value: float) -> int:
    """Round ``.5`` away from negative infinity (canvas-style rounding, not banker's)."""

    return int(math.floor(value + 0.5))


def clamp(value, lower, upper):
    return max(lower, min(upper, value))


async def gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """Like :func:`asyncio.gather`, but the first failure cancels the siblings.

    The siblings are awaited after cancellation so none keeps running once
    the error reaches the caller.
    """

    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
