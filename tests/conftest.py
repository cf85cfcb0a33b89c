import math

import pytest

from smclab.models import Candle

# 2023-11-14 00:00:00 UTC
BASE_TIME = 1_699_920_000


def build_candles(rows, start=BASE_TIME, step=900):
    """Candles from (open, high, low, close) tuples, 15 minutes apart"""
    return [
        Candle(start + i * step, float(o), float(h), float(l), float(c))
        for i, (o, h, l, c) in enumerate(rows)
    ]


def wave_candles(count=300):
    """Deterministic oscillating series with swings, gaps and breaks"""
    rows = []
    prev_close = 100.0
    for i in range(count):
        close = 100 + 5 * math.sin(i / 7) + 2 * math.sin(i / 3) + 0.02 * i
        open_ = prev_close
        high = max(open_, close) + 0.5 + 0.3 * abs(math.sin(i))
        low = min(open_, close) - 0.5 - 0.3 * abs(math.cos(i))
        rows.append((open_, high, low, close))
        prev_close = close
    return build_candles(rows)


@pytest.fixture
def make_candles():
    return build_candles


@pytest.fixture
def wave():
    return wave_candles()
