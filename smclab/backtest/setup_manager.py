"""
Pending setup management: expiry, invalidation and promotion to a trade
"""
from dataclasses import dataclass
from typing import Optional, Sequence

from ..config.models import Settings
from ..indicators import value_at
from ..models import Candle, Setup, Trade
from ..signal_generator import build_trade_levels


@dataclass
class SetupUpdate:
    setup: Optional[Setup]  # still pending
    trade: Optional[Trade] = None  # promoted, unsized
    reason: Optional[str] = None  # 'expired', 'invalidated', 'triggered'


def manage_setup(candle: Candle, current_index: int, setup: Setup, settings: Settings,
                 atr: Sequence[Optional[float]]) -> SetupUpdate:
    """
    Advance a pending setup by one bar

    Expiry and protection-price invalidation are checked before entry. Entry
    happens at the POI boundary facing price (top for longs, bottom for shorts).
    """
    is_long = setup.direction == 'LONG'

    if current_index > setup.expiry_index:
        return SetupUpdate(setup=None, reason='expired')

    if (is_long and candle.low <= setup.protection_price) or \
            (not is_long and candle.high >= setup.protection_price):
        return SetupUpdate(setup=None, reason='invalidated')

    if is_long and candle.low <= setup.poi.top:
        entry_price = setup.poi.top
    elif not is_long and candle.high >= setup.poi.bottom:
        entry_price = setup.poi.bottom
    else:
        return SetupUpdate(setup=setup)

    levels = build_trade_levels(
        setup.direction, entry_price, setup.poi, value_at(atr, current_index), settings
    )
    if levels is None:
        # Zero risk: no trade, keep waiting
        return SetupUpdate(setup=setup)

    stop_loss, take_profit1, take_profit2 = levels
    trade = Trade(
        direction=setup.direction,
        entry_price=entry_price,
        entry_time=candle.time,
        entry_index=current_index,
        stop_loss=stop_loss,
        take_profit1=take_profit1,
        take_profit2=take_profit2,
        setup_type=setup.setup_type
    )
    return SetupUpdate(setup=None, trade=trade, reason='triggered')
