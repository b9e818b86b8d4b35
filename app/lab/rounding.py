from __future__ import annotations

import math


def round_half_up(value: float) -> int:
    """四舍五入到整数，.5 一律进位（内置 round 是银行家舍入，2.5 -> 2）"""
    return math.floor(value + 0.5)
