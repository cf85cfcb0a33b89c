"""
Smart Money Concepts detection functions
"""
import logging
import math
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .config.models import Settings, DEFAULT_SETTINGS, apply_settings
from .exceptions import ValidationError
from .indicators import calculate_ema, calculate_atr
from .models import (
    Candle, SwingPoint, LiquidityGrab, StructureEvent, POI, AnalysisBundle
)

logger = logging.getLogger(__name__)

# Settings that change the content of an AnalysisBundle
ANALYSIS_KEYS = {'enable_trend_filter', 'ema_period', 'enable_atr', 'atr_period'}


def validate_candles(candles: Sequence[Candle]) -> None:
    """
    Reject malformed candle sequences before any analysis is attempted

    Raises:
        ValidationError: On missing/NaN times or prices, broken OHLC envelopes
            or non-increasing timestamps
    """
    prev_time = None
    for i, candle in enumerate(candles):
        for name in ('time', 'open', 'high', 'low', 'close'):
            value = getattr(candle, name, None)
            if value is None or isinstance(value, bool) or not isinstance(value, (int, float)) \
                    or not math.isfinite(value):
                raise ValidationError(
                    f"Candle {i} has invalid {name}: {value!r}",
                    details={'index': i, 'field': name}
                )

        if candle.high < candle.low or candle.high < max(candle.open, candle.close) \
                or candle.low > min(candle.open, candle.close):
            raise ValidationError(
                f"Candle {i} violates low <= open,close <= high",
                details={'index': i}
            )

        if prev_time is not None and candle.time <= prev_time:
            raise ValidationError(
                f"Candle times must be strictly increasing (index {i}: {candle.time} <= {prev_time})",
                details={'index': i}
            )
        prev_time = candle.time


def find_swing_points(candles: Sequence[Candle]) -> Tuple[List[SwingPoint], List[SwingPoint]]:
    """Detect 3-bar fractal swing highs and lows on interior bars"""
    swing_highs: List[SwingPoint] = []
    swing_lows: List[SwingPoint] = []

    for i in range(1, len(candles) - 1):
        prev, current, nxt = candles[i - 1], candles[i], candles[i + 1]

        if current.high > prev.high and current.high > nxt.high:
            swing_highs.append(SwingPoint(i, float(current.high), current.time, 'high'))

        if current.low < prev.low and current.low < nxt.low:
            swing_lows.append(SwingPoint(i, float(current.low), current.time, 'low'))

    return swing_highs, swing_lows


def initial_trend(swing_highs: List[SwingPoint], swing_lows: List[SwingPoint]) -> str:
    """Major trend implied by the first two swing highs and lows"""
    if len(swing_highs) < 2 or len(swing_lows) < 2:
        return 'undetermined'

    if swing_highs[1].price > swing_highs[0].price and swing_lows[1].price > swing_lows[0].price:
        return 'bullish'
    if swing_highs[1].price < swing_highs[0].price and swing_lows[1].price < swing_lows[0].price:
        return 'bearish'
    return 'undetermined'


def analyze_market_structure(
    candles: Sequence[Candle],
    swing_highs: List[SwingPoint],
    swing_lows: List[SwingPoint]
) -> Tuple[List[StructureEvent], List[StructureEvent]]:
    """
    Detect Break of Structure (BOS) and Change of Character (CHoCH)

    A close beyond unbroken earlier swings marks all of them broken and emits a
    single event priced at the most recent one. The event is a BOS when it agrees
    with the major trend, otherwise a CHoCH that flips the trend.

    Returns:
        (bos_events, choch_events)
    """
    bos_events: List[StructureEvent] = []
    choch_events: List[StructureEvent] = []

    if len(swing_highs) < 2 or len(swing_lows) < 2:
        return bos_events, choch_events

    major_trend = initial_trend(swing_highs, swing_lows)

    for i in range(1, len(candles)):
        candle = candles[i]

        broken_highs = [sh for sh in swing_highs
                        if sh.index < i and not sh.broken and candle.close > sh.price]
        broken_lows = [sl for sl in swing_lows
                       if sl.index < i and not sl.broken and candle.close < sl.price]

        if broken_highs:
            last = broken_highs[-1]
            label = 'BOS' if major_trend == 'bullish' else 'CHoCH'
            event = StructureEvent(i, candle.time, last.price, 'up', label, last.index)
            (bos_events if label == 'BOS' else choch_events).append(event)
            major_trend = 'bullish'
            for sh in broken_highs:
                sh.broken = True

        if broken_lows:
            last = broken_lows[-1]
            label = 'BOS' if major_trend == 'bearish' else 'CHoCH'
            event = StructureEvent(i, candle.time, last.price, 'down', label, last.index)
            (bos_events if label == 'BOS' else choch_events).append(event)
            major_trend = 'bearish'
            for sl in broken_lows:
                sl.broken = True

    return bos_events, choch_events


def detect_liquidity_grabs(
    candles: Sequence[Candle],
    swing_highs: List[SwingPoint],
    swing_lows: List[SwingPoint]
) -> List[LiquidityGrab]:
    """Emit one BSL/SSL event per swing on the first later bar trading through it"""
    grabs: List[LiquidityGrab] = []

    for sh in swing_highs:
        for j in range(sh.index + 1, len(candles)):
            if candles[j].high > sh.price:
                sh.grabbed = True
                grabs.append(LiquidityGrab(j, candles[j].time, sh, 'BSL', candles[j].high, candles[j].low))
                break

    for sl in swing_lows:
        for j in range(sl.index + 1, len(candles)):
            if candles[j].low < sl.price:
                sl.grabbed = True
                grabs.append(LiquidityGrab(j, candles[j].time, sl, 'SSL', candles[j].high, candles[j].low))
                break

    grabs.sort(key=lambda g: (g.index, 0 if g.kind == 'BSL' else 1, g.swing.index))
    return grabs


def _first_mitigation(candles: Sequence[Candle], start: int, touched) -> Optional[int]:
    for j in range(start, len(candles)):
        if touched(candles[j]):
            return j
    return None


def _make_poi(candles, poi_type, bias, top, bottom, origin, mitigation) -> POI:
    return POI(
        poi_type=poi_type,
        bias=bias,
        top=float(top),
        bottom=float(bottom),
        origin_index=origin,
        origin_time=candles[origin].time,
        is_mitigated=mitigation is not None,
        mitigation_index=mitigation,
        mitigation_time=candles[mitigation].time if mitigation is not None else None
    )


def detect_fvgs(candles: Sequence[Candle]) -> List[POI]:
    """Detect Fair Value Gaps around each interior bar and their mitigation"""
    fvgs: List[POI] = []

    for i in range(1, len(candles) - 1):
        prev, nxt = candles[i - 1], candles[i + 1]

        if prev.low > nxt.high:
            top, bottom = prev.low, nxt.high
            mitigation = _first_mitigation(candles, i + 2, lambda c, top=top: c.low <= top)
            fvgs.append(_make_poi(candles, 'FVG', 'bullish', top, bottom, i, mitigation))

        if prev.high < nxt.low:
            top, bottom = nxt.low, prev.high
            mitigation = _first_mitigation(candles, i + 2, lambda c, bottom=bottom: c.high >= bottom)
            fvgs.append(_make_poi(candles, 'FVG', 'bearish', top, bottom, i, mitigation))

    return fvgs


def detect_order_blocks(candles: Sequence[Candle]) -> List[POI]:
    """
    Detect Order Blocks: the last opposite-direction bar before a close
    through its range
    """
    obs: List[POI] = []

    for i in range(len(candles) - 1):
        ob_candle, break_candle = candles[i], candles[i + 1]
        top, bottom = ob_candle.high, ob_candle.low

        # Bullish bar whose low is closed through: trapped buyers
        if ob_candle.is_bullish and break_candle.close < ob_candle.low:
            mitigation = _first_mitigation(candles, i + 2, lambda c, bottom=bottom: c.high >= bottom)
            obs.append(_make_poi(candles, 'OB', 'bearish', top, bottom, i, mitigation))

        if ob_candle.is_bearish and break_candle.close > ob_candle.high:
            mitigation = _first_mitigation(candles, i + 2, lambda c, top=top: c.low <= top)
            obs.append(_make_poi(candles, 'OB', 'bullish', top, bottom, i, mitigation))

    return obs


def derive_breaker_blocks(order_blocks: List[POI]) -> List[POI]:
    """Reinterpret mitigated Order Blocks with inverted bias"""
    return [
        replace(ob, poi_type='Breaker', bias='bearish' if ob.bias == 'bullish' else 'bullish')
        for ob in order_blocks if ob.is_mitigated
    ]


def find_nearest_poi(current_index: int, bias: str, bundle: AnalysisBundle) -> Optional[POI]:
    """Most recent OB, FVG or Breaker of `bias` formed at or before `current_index`"""
    candidates = [p for p in bundle.pois() if p.bias == bias and p.origin_index <= current_index]
    if not candidates:
        return None
    # sorted() is stable, so OB > FVG > Breaker on equal origin
    return sorted(candidates, key=lambda p: -p.origin_index)[0]


def _indicators(candles: Sequence[Candle], settings: Settings) -> Dict[str, Any]:
    ema = calculate_ema(candles, settings.ema_period) if settings.enable_trend_filter else []
    atr = calculate_atr(candles, settings.atr_period) if settings.enable_atr else []
    return {
        'ema': ema,
        'atr': atr,
        'ema_period': settings.ema_period if settings.enable_trend_filter else None,
        'atr_period': settings.atr_period if settings.enable_atr else None,
    }


def analyze(candles: Sequence[Candle], settings: Optional[Settings] = None) -> AnalysisBundle:
    """
    Run every SMC detector over a candle series

    Args:
        candles: Time-ordered candles
        settings: Controls which indicators are computed

    Returns:
        AnalysisBundle; empty when fewer than 3 candles are given

    Raises:
        ValidationError: If the candle sequence is malformed
    """
    settings = settings or DEFAULT_SETTINGS
    candles = list(candles)
    validate_candles(candles)

    if len(candles) < 3:
        logger.debug(f"Only {len(candles)} candles, returning empty analysis")
        return AnalysisBundle(times=[c.time for c in candles])

    swing_highs, swing_lows = find_swing_points(candles)
    bos_events, choch_events = analyze_market_structure(candles, swing_highs, swing_lows)
    liquidity_grabs = detect_liquidity_grabs(candles, swing_highs, swing_lows)
    order_blocks = detect_order_blocks(candles)
    fvgs = detect_fvgs(candles)

    bundle = AnalysisBundle(
        swing_highs=swing_highs,
        swing_lows=swing_lows,
        liquidity_grabs=liquidity_grabs,
        bos_events=bos_events,
        choch_events=choch_events,
        order_blocks=order_blocks,
        fvgs=fvgs,
        breaker_blocks=derive_breaker_blocks(order_blocks),
        times=[c.time for c in candles],
        **_indicators(candles, settings)
    )

    logger.debug(
        f"Analyzed {len(candles)} candles: {len(swing_highs)} swing highs, "
        f"{len(swing_lows)} swing lows, {len(bos_events)} BOS, {len(choch_events)} CHoCH, "
        f"{len(order_blocks)} OBs, {len(fvgs)} FVGs, {len(bundle.breaker_blocks)} breakers"
    )
    return bundle


def refresh_indicators(bundle: AnalysisBundle, candles: Sequence[Candle],
                       settings: Settings) -> AnalysisBundle:
    """
    Return `bundle` with EMA/ATR matching `settings`, recomputing only when
    the requested periods differ from the ones it was built with
    """
    if len(candles) < 3:
        return bundle

    ema_period = settings.ema_period if settings.enable_trend_filter else None
    atr_period = settings.atr_period if settings.enable_atr else None
    if ema_period == bundle.ema_period and atr_period == bundle.atr_period:
        return bundle

    return replace(bundle, **_indicators(candles, settings))


class AnalysisSession:
    """Owns the candles and settings of one analysis and caches its bundle"""

    def __init__(self, candles: Sequence[Candle], settings: Optional[Settings] = None):
        self.candles = list(candles)
        validate_candles(self.candles)
        self.settings = settings or DEFAULT_SETTINGS
        self._bundle: Optional[AnalysisBundle] = None

    @property
    def bundle(self) -> AnalysisBundle:
        if self._bundle is None:
            self._bundle = analyze(self.candles, self.settings)
        return self._bundle

    def update_settings(self, changes: Mapping[str, Any]) -> Dict[str, Tuple[Any, Any]]:
        """Apply setting changes and drop the cached bundle if analysis depends on them"""
        self.settings, change_set = apply_settings(self.settings, changes)
        if ANALYSIS_KEYS & set(change_set):
            logger.debug(f"Analysis settings changed: {sorted(ANALYSIS_KEYS & set(change_set))}")
            self._bundle = None
        return change_set
