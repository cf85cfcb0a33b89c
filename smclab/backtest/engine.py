"""
Candle-by-candle backtest driver
"""
import logging
from typing import List, Optional, Sequence

from ..config.models import Settings
from ..exceptions import ValidationError
from ..models import (
    AnalysisBundle, BacktestResult, Candle, ClosedTrade, ImmediateExit, Setup, Trade
)
from ..signal_generator import PoiRegistry, find_signal
from .setup_manager import manage_setup
from .trade_manager import close_immediate_exit, manage_active_trade, open_trade

logger = logging.getLogger(__name__)


class BacktestSession:
    """
    State of a single backtest run: equity, trade log, and at most one
    active trade or pending setup
    """

    def __init__(self, candles: Sequence[Candle], settings: Settings,
                 bundle: AnalysisBundle, htf_bundle: Optional[AnalysisBundle] = None):
        self.candles = list(candles)
        if bundle.times and len(bundle.times) != len(self.candles):
            raise ValidationError(
                f"Analysis covers {len(bundle.times)} candles but {len(self.candles)} were given"
            )
        self.settings = settings
        self.bundle = bundle
        self.htf_bundle = htf_bundle

        self.starting_equity = float(settings.investment_amount)
        self.equity = self.starting_equity
        self.trades: List[ClosedTrade] = []
        self.active_trade: Optional[Trade] = None
        self.setup: Optional[Setup] = None
        self.registry = PoiRegistry.from_bundle(bundle)

    def _record(self, legs: List[ClosedTrade]) -> None:
        for leg in legs:
            self.trades.append(leg)
            self.equity += leg.pnl
            logger.debug(f"{leg.exit_reason} {leg.direction} @ {leg.exit_price:.5f} "
                         f"size {leg.size:.4f} pnl {leg.pnl:.2f}")

    def _enter(self, template: Trade) -> None:
        trade = open_trade(template, self.equity, self.settings)
        if trade is not None:
            self.active_trade = trade
            logger.debug(f"Opened {trade.direction} {trade.setup_type} @ {trade.entry_price:.5f} "
                         f"SL {trade.stop_loss:.5f} TP1 {trade.take_profit1:.5f} "
                         f"TP2 {trade.take_profit2:.5f} size {trade.size:.4f}")

    def step(self, index: int) -> None:
        """Process one bar: manage trade, then setup, then look for a signal"""
        candle = self.candles[index]

        if self.active_trade is not None:
            update = manage_active_trade(candle, self.active_trade, self.settings)
            self._record(update.closed)
            self.active_trade = update.trade
            if self.active_trade is not None:
                return

        if self.setup is not None:
            update = manage_setup(candle, index, self.setup, self.settings, self.bundle.atr)
            self.setup = update.setup
            if update.reason in ('expired', 'invalidated'):
                logger.debug(f"Setup {update.reason} at bar {index}")
            if update.trade is not None:
                self._enter(update.trade)

        if self.active_trade is not None or self.setup is not None:
            return

        signal = find_signal(candle, index, self.settings, self.bundle,
                             self.htf_bundle, self.registry)
        if isinstance(signal, Setup):
            self.setup = signal
        elif isinstance(signal, Trade):
            self._enter(signal)
        elif isinstance(signal, ImmediateExit):
            leg = close_immediate_exit(signal, self.equity, self.settings)
            if leg is not None:
                self._record([leg])

    def run(self) -> BacktestResult:
        logger.debug(f"Starting backtest ({self.settings.entry_strategy}) over "
                     f"{len(self.candles)} candles")
        for index in range(len(self.candles)):
            self.step(index)
        return self.result()

    def result(self) -> BacktestResult:
        total = len(self.trades)
        wins = sum(1 for t in self.trades if t.pnl > 0)
        win_rate = wins / total * 100 if total > 0 else 0.0
        net_pnl = self.equity - self.starting_equity

        result = BacktestResult(
            starting_equity=self.starting_equity,
            final_equity=self.equity,
            net_pnl=net_pnl,
            pnl_percent=net_pnl / self.starting_equity * 100,
            win_rate=win_rate,
            total_trades=total,
            trades=list(self.trades),
            open_trade=self.active_trade
        )
        logger.debug(f"Backtest finished: {total} exits, win rate {win_rate:.1f}%, "
                     f"net P&L {net_pnl:.2f}")
        return result


def run_backtest(candles: Sequence[Candle], settings: Settings, bundle: AnalysisBundle,
                 htf_bundle: Optional[AnalysisBundle] = None) -> BacktestResult:
    """Convenience function to run a backtest over an analyzed candle series"""
    return BacktestSession(candles, settings, bundle, htf_bundle).run()
