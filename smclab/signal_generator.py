"""
Signal generation logic for SMC backtesting

Two interchangeable entry strategies:
- reversal_confirmation: wait for a structure break after a liquidity grab,
  then plan an entry at the nearest POI (returns a Setup)
- poi_reaction: enter directly when price reacts at a POI with enough
  confluence (returns a Trade or an ImmediateExit)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Union

from .config.models import Settings
from .indicators import value_at
from .models import AnalysisBundle, Candle, ImmediateExit, POI, Setup, Trade
from .smc_detector import find_nearest_poi

logger = logging.getLogger(__name__)

# UTC hour windows [start, end)
KILLZONES: Dict[str, Tuple[int, int]] = {
    'london': (7, 10),
    'new_york': (12, 15),
}

Signal = Union[Setup, Trade, ImmediateExit]


@dataclass
class TrackedPOI:
    poi: POI
    touched: bool = False


@dataclass
class PoiRegistry:
    """POIs available for reaction entries, each usable once per backtest"""
    entries: List[TrackedPOI] = field(default_factory=list)

    @classmethod
    def from_bundle(cls, bundle: AnalysisBundle) -> 'PoiRegistry':
        return cls([TrackedPOI(poi) for poi in bundle.pois()])

    def untouched_before(self, index: int) -> List[TrackedPOI]:
        return [e for e in self.entries if not e.touched and e.poi.origin_index < index]

    @property
    def touched_count(self) -> int:
        return sum(1 for e in self.entries if e.touched)


def enabled_killzones(settings: Settings) -> List[Tuple[int, int]]:
    windows = []
    if settings.use_london_killzone:
        windows.append(KILLZONES['london'])
    if settings.use_new_york_killzone:
        windows.append(KILLZONES['new_york'])
    return windows


def in_killzone(candle: Candle, settings: Settings) -> bool:
    """True when the bar opens inside an enabled session window (UTC)"""
    hour = datetime.fromtimestamp(candle.time, tz=timezone.utc).hour
    return any(start <= hour < end for start, end in enabled_killzones(settings))


def bias_allows(direction: str, settings: Settings) -> bool:
    if settings.htf_bias == 'long_only' and direction == 'SHORT':
        return False
    if settings.htf_bias == 'short_only' and direction == 'LONG':
        return False
    return True


def ema_agrees(candle: Candle, index: int, direction: str,
               bundle: AnalysisBundle, strict: bool = False) -> Optional[bool]:
    """
    Whether the close is on the trend side of the EMA; None without an EMA value

    A close exactly at the EMA agrees unless `strict` is set.
    """
    ema = value_at(bundle.ema, index)
    if ema is None:
        return None
    if candle.close == ema:
        return not strict
    if direction == 'LONG':
        return candle.close > ema
    return candle.close < ema


def is_inside_htf_poi(candle: Candle, direction: str,
                      htf_bundle: Optional[AnalysisBundle]) -> bool:
    """Bar overlaps a higher-timeframe POI of the same bias that is still unmitigated"""
    if htf_bundle is None:
        return False
    bias = 'bullish' if direction == 'LONG' else 'bearish'
    for poi in htf_bundle.pois():
        if poi.bias == bias and poi.is_active_at(candle.time) and poi.overlaps(candle):
            return True
    return False


def build_trade_levels(direction: str, entry_price: float, poi: POI,
                       atr_value: Optional[float],
                       settings: Settings) -> Optional[Tuple[float, float, float]]:
    """
    Stop and take-profit levels for an entry at a POI boundary

    The stop sits atr_multiplier ATRs away when ATR is enabled and available,
    otherwise at the far edge of the zone.

    Returns:
        (stop_loss, take_profit1, take_profit2), or None when the risk is zero
    """
    is_long = direction == 'LONG'
    if settings.enable_atr and atr_value:
        offset = atr_value * settings.atr_multiplier
        stop_loss = entry_price - offset if is_long else entry_price + offset
    else:
        stop_loss = poi.bottom if is_long else poi.top

    risk = abs(entry_price - stop_loss)
    if risk <= 0:
        return None

    sign = 1 if is_long else -1
    take_profit1 = entry_price + sign * risk * settings.rr_ratio
    take_profit2 = entry_price + sign * risk * settings.rr_ratio_tp2
    return stop_loss, take_profit1, take_profit2


def calculate_confluence_score(candle: Candle, poi: POI, current_index: int,
                               bundle: AnalysisBundle,
                               htf_bundle: Optional[AnalysisBundle],
                               settings: Settings) -> Tuple[float, List[str]]:
    """
    Weighted sum of the conditions backing a reaction at `poi`

    Returns:
        (score, details) where details names each contributing factor
    """
    score = 0.0
    details: List[str] = []
    direction = poi.direction

    if poi.poi_type == 'OB':
        score += settings.ob_weight
        details.append(f"OB({settings.ob_weight})")
    if poi.poi_type == 'Breaker':
        score += settings.breaker_weight
        details.append(f"Breaker({settings.breaker_weight})")
    if settings.enable_mta and is_inside_htf_poi(candle, direction, htf_bundle):
        score += settings.mta_weight
        details.append(f"MTA({settings.mta_weight})")
    if settings.enable_trend_filter and \
            ema_agrees(candle, current_index, direction, bundle, strict=True):
        score += settings.ema_weight
        details.append(f"EMA({settings.ema_weight})")

    lookback_start = max(0, current_index - settings.recent_liquidity_grab_lookback)

    # Inducement: the latest minor swing in front of the zone is swept by this bar
    inducement_found = False
    if direction == 'LONG':
        points = [sl for sl in bundle.swing_lows
                  if lookback_start < sl.index < current_index and sl.price > poi.top]
        if points and candle.low < points[-1].price:
            inducement_found = True
    else:
        points = [sh for sh in bundle.swing_highs
                  if lookback_start < sh.index < current_index and sh.price < poi.bottom]
        if points and candle.high > points[-1].price:
            inducement_found = True

    if inducement_found:
        score += settings.inducement_weight
        details.append(f"Inducement({settings.inducement_weight})")
    else:
        wanted = 'SSL' if direction == 'LONG' else 'BSL'
        if any(g.kind == wanted and lookback_start <= g.index <= current_index
               for g in bundle.liquidity_grabs):
            score += settings.liquidity_grab_weight
            details.append(f"LiqGrab({settings.liquidity_grab_weight})")

    return score, details


def find_confirmation_signal(candle: Candle, current_index: int, settings: Settings,
                             bundle: AnalysisBundle,
                             htf_bundle: Optional[AnalysisBundle]) -> Optional[Setup]:
    """Structure break after a liquidity grab -> Setup waiting at the nearest POI"""
    events = [e for e in bundle.structure_events_at(current_index)
              if e.label == 'CHoCH' or settings.confirm_on_bos]
    if not events:
        return None

    event = events[0]
    direction = 'LONG' if event.direction == 'up' else 'SHORT'

    if not bias_allows(direction, settings):
        return None
    if settings.enable_trend_filter and ema_agrees(candle, current_index, direction, bundle) is False:
        return None
    if settings.enable_mta and not is_inside_htf_poi(candle, direction, htf_bundle):
        return None

    poi = find_nearest_poi(current_index, 'bullish' if direction == 'LONG' else 'bearish', bundle)
    if poi is None:
        return None

    wanted = 'SSL' if direction == 'LONG' else 'BSL'
    grabs = [g for g in bundle.liquidity_grabs if g.kind == wanted and g.time < candle.time]
    if not grabs:
        return None
    grab = grabs[-1]

    setup = Setup(
        direction=direction,
        poi=poi,
        protection_price=grab.bar_low if direction == 'LONG' else grab.bar_high,
        creation_index=current_index,
        expiry_index=current_index + settings.setup_expiration_candles,
        setup_type=f"{wanted}_then_{event.label}"
    )
    logger.debug(f"Setup {setup.setup_type} at bar {current_index}, POI {poi.poi_type} "
                 f"{poi.bottom:.5f}-{poi.top:.5f}, protection {setup.protection_price:.5f}")
    return setup


def find_poi_reaction_signal(candle: Candle, current_index: int, settings: Settings,
                             bundle: AnalysisBundle,
                             htf_bundle: Optional[AnalysisBundle],
                             registry: PoiRegistry) -> Optional[Union[Trade, ImmediateExit]]:
    """Confluence-scored reaction at an untouched POI -> Trade or ImmediateExit"""
    for entry in registry.untouched_before(current_index):
        poi = entry.poi
        direction = poi.direction
        if not bias_allows(direction, settings):
            continue

        entered = (candle.low <= poi.top) if direction == 'LONG' else (candle.high >= poi.bottom)
        if not entered:
            continue

        score, details = calculate_confluence_score(
            candle, poi, current_index, bundle, htf_bundle, settings
        )
        if score < settings.entry_score_threshold:
            continue

        entry.touched = True
        logger.debug(f"[Score] bar {current_index} {poi.poi_type} score {score} ({' + '.join(details)})")

        entry_price = poi.top if direction == 'LONG' else poi.bottom
        levels = build_trade_levels(
            direction, entry_price, poi, value_at(bundle.atr, current_index), settings
        )
        if levels is None:
            continue
        stop_loss, take_profit1, take_profit2 = levels

        setup_type = f"POI_Reaction_{poi.poi_type}_Score{score:g}"
        stopped_on_same_bar = (candle.low <= stop_loss) if direction == 'LONG' \
            else (candle.high >= stop_loss)

        if stopped_on_same_bar:
            return ImmediateExit(
                direction=direction,
                entry_price=entry_price,
                entry_time=candle.time,
                stop_loss=stop_loss,
                take_profit1=take_profit1,
                take_profit2=take_profit2,
                exit_price=stop_loss,
                setup_type=setup_type
            )

        return Trade(
            direction=direction,
            entry_price=entry_price,
            entry_time=candle.time,
            entry_index=current_index,
            stop_loss=stop_loss,
            take_profit1=take_profit1,
            take_profit2=take_profit2,
            setup_type=setup_type
        )

    return None


def find_signal(candle: Candle, current_index: int, settings: Settings,
                bundle: AnalysisBundle,
                htf_bundle: Optional[AnalysisBundle] = None,
                registry: Optional[PoiRegistry] = None) -> Optional[Signal]:
    """
    Look for a new entry on the current bar

    Args:
        candle: Current bar
        current_index: Index of the bar in the analyzed series
        settings: Strategy settings
        bundle: Analysis of the trading timeframe
        htf_bundle: Analysis of the higher timeframe, if any
        registry: Touched-state of POIs for the reaction strategy

    Returns:
        Setup, Trade (unsized), ImmediateExit or None
    """
    if settings.enable_killzone_filter and not in_killzone(candle, settings):
        return None

    if settings.entry_strategy == 'reversal_confirmation':
        return find_confirmation_signal(candle, current_index, settings, bundle, htf_bundle)

    if settings.entry_strategy == 'poi_reaction':
        if registry is None:
            registry = PoiRegistry.from_bundle(bundle)
        return find_poi_reaction_signal(
            candle, current_index, settings, bundle, htf_bundle, registry
        )

    return None
