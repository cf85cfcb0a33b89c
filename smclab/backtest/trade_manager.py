"""
Open position management: partial take-profit, breakeven and final exit
"""
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from ..config.models import Settings
from ..models import Candle, ClosedTrade, ImmediateExit, Trade

logger = logging.getLogger(__name__)


@dataclass
class TradeUpdate:
    """Result of managing a trade for one bar"""
    trade: Optional[Trade]  # None once fully closed
    closed: List[ClosedTrade] = field(default_factory=list)
    pnl: float = 0.0


def position_size(equity: float, risk_percent: float, entry_price: float,
                  stop_loss: float) -> Optional[float]:
    """Units such that hitting the stop loses `risk_percent` of equity; None on zero risk"""
    risk_per_unit = abs(entry_price - stop_loss)
    if risk_per_unit <= 0:
        return None
    return (equity * risk_percent / 100) / risk_per_unit


def open_trade(template: Trade, equity: float, settings: Settings) -> Optional[Trade]:
    """Size an unsized trade once, at entry"""
    size = position_size(equity, settings.risk_per_trade, template.entry_price, template.stop_loss)
    if size is None:
        logger.debug(f"Skipping {template.setup_type}: zero risk per unit")
        return None
    return replace(template, size=size, initial_size=size, exit_records=[])


def leg_pnl(direction: str, entry_price: float, exit_price: float, size: float) -> float:
    sign = 1 if direction == 'LONG' else -1
    return (exit_price - entry_price) * size * sign


def _close_leg(trade: Trade, candle: Candle, exit_price: float,
               size: float, reason: str) -> ClosedTrade:
    return ClosedTrade(
        direction=trade.direction,
        entry_price=trade.entry_price,
        entry_time=trade.entry_time,
        exit_price=exit_price,
        exit_time=candle.time,
        exit_reason=reason,
        size=size,
        initial_size=trade.initial_size,
        pnl=leg_pnl(trade.direction, trade.entry_price, exit_price, size),
        setup_type=trade.setup_type
    )


def close_immediate_exit(signal: ImmediateExit, equity: float,
                         settings: Settings) -> Optional[ClosedTrade]:
    """Realize a trade that was opened and stopped within one bar"""
    size = position_size(equity, settings.risk_per_trade, signal.entry_price, signal.stop_loss)
    if size is None:
        return None
    return ClosedTrade(
        direction=signal.direction,
        entry_price=signal.entry_price,
        entry_time=signal.entry_time,
        exit_price=signal.exit_price,
        exit_time=signal.entry_time,
        exit_reason=signal.exit_reason,
        size=size,
        initial_size=size,
        pnl=leg_pnl(signal.direction, signal.entry_price, signal.exit_price, size),
        setup_type=signal.setup_type
    )


def _stop_touched(trade: Trade, candle: Candle) -> bool:
    return candle.low <= trade.stop_loss if trade.is_long else candle.high >= trade.stop_loss


def _target_touched(trade: Trade, candle: Candle, price: float) -> bool:
    return candle.high >= price if trade.is_long else candle.low <= price


def manage_active_trade(candle: Candle, trade: Trade, settings: Settings) -> TradeUpdate:
    """
    Advance an open trade by one bar

    The stop is checked before any target on the same bar. TP1 closes half of
    the initial size and optionally moves the stop to entry; the remainder
    exits at the stop or TP2.

    Args:
        candle: Current bar
        trade: Open trade (not modified)
        settings: Backtest settings

    Returns:
        TradeUpdate with the updated trade (None if closed) and the closed legs
    """
    current = replace(trade, exit_records=list(trade.exit_records))
    update = TradeUpdate(trade=current)

    def finish(exit_price: float, reason: str) -> TradeUpdate:
        leg = _close_leg(current, candle, exit_price, current.size, reason)
        current.exit_records.append(leg)
        update.closed.append(leg)
        update.pnl += leg.pnl
        update.trade = None
        return update

    if not current.tp1_hit:
        if _stop_touched(current, candle):
            return finish(current.stop_loss, 'StopLoss')

        if _target_touched(current, candle, current.take_profit1):
            exit_size = current.initial_size / 2
            leg = _close_leg(current, candle, current.take_profit1, exit_size, 'TP1')
            current.exit_records.append(leg)
            update.closed.append(leg)
            update.pnl += leg.pnl

            current.size -= exit_size
            current.tp1_hit = True
            if settings.enable_breakeven:
                current.stop_loss = current.entry_price

    if current.tp1_hit:
        if _stop_touched(current, candle):
            at_entry = settings.enable_breakeven and current.stop_loss == current.entry_price
            return finish(current.stop_loss, 'Breakeven' if at_entry else 'StopLoss')

        if _target_touched(current, candle, current.take_profit2):
            return finish(current.take_profit2, 'TP2')

    return update
