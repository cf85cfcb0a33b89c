"""
Technical indicators over candle sequences:
- EMA
- ATR (Wilder)

Each series has one entry per candle; entries without enough history are None.
"""
from typing import List, Optional, Sequence

from .exceptions import ValidationError
from .models import Candle


def _check_period(period: int) -> None:
    if int(period) != period or period < 1:
        raise ValidationError(f"Indicator period must be a positive integer, got {period}")


def calculate_ema(candles: Sequence[Candle], period: int) -> List[Optional[float]]:
    """
    Exponential moving average of closes, seeded with the simple average
    of the first `period` closes.

    Returns an empty list when there are fewer candles than `period`.
    """
    _check_period(period)
    period = int(period)
    if len(candles) < period:
        return []

    k = 2 / (period + 1)
    values: List[Optional[float]] = [None] * (period - 1)
    prev_ema = sum(c.close for c in candles[:period]) / period
    values.append(prev_ema)

    for candle in candles[period:]:
        prev_ema = candle.close * k + prev_ema * (1 - k)
        values.append(prev_ema)

    return values


def true_range(candle: Candle, prev_candle: Optional[Candle]) -> float:
    high_low = candle.high - candle.low
    if prev_candle is None:
        return high_low
    return max(
        high_low,
        abs(candle.high - prev_candle.close),
        abs(candle.low - prev_candle.close)
    )


def calculate_atr(candles: Sequence[Candle], period: int) -> List[Optional[float]]:
    """
    Average True Range with Wilder smoothing.

    The first defined value (at index period-1) is the mean of the first
    `period` true ranges; later values use
    atr[i] = (atr[i-1] * (period - 1) + tr[i]) / period.
    """
    _check_period(period)
    period = int(period)
    if len(candles) < period:
        return []

    values: List[Optional[float]] = []
    running = 0.0
    for i, candle in enumerate(candles):
        tr = true_range(candle, candles[i - 1] if i > 0 else None)
        if i < period:
            running += tr
            if i == period - 1:
                running /= period
                values.append(running)
            else:
                values.append(None)
        else:
            running = (running * (period - 1) + tr) / period
            values.append(running)

    return values


def value_at(series: Sequence[Optional[float]], index: int) -> Optional[float]:
    """Indicator value at `index`, or None when it is not available"""
    if index < 0 or index >= len(series):
        return None
    return series[index]
