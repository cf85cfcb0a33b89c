"""
Backtest package: trade lifecycle and the bar-by-bar driver
"""

from .engine import BacktestSession, run_backtest
from .setup_manager import SetupUpdate, manage_setup
from .trade_manager import TradeUpdate, manage_active_trade, open_trade, position_size

__all__ = [
    'BacktestSession', 'run_backtest',
    'SetupUpdate', 'manage_setup',
    'TradeUpdate', 'manage_active_trade', 'open_trade', 'position_size'
]
