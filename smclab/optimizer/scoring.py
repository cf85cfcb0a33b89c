"""
Objective functions for ranking backtest results
"""
import math

import numpy as np

from ..exceptions import ValidationError
from ..models import BacktestResult
from .param_space import OPTIMIZATION_TARGETS


def sharpe_ratio(result: BacktestResult) -> float:
    """Mean leg P&L over its population standard deviation; 0 when undefined"""
    if not result.trades:
        return 0.0
    pnls = np.array([t.pnl for t in result.trades], dtype=float)
    volatility = pnls.std()
    if volatility <= 0 or not np.isfinite(volatility):
        return 0.0
    return float(pnls.mean() / volatility)


def profit_factor(result: BacktestResult) -> float:
    """Gross profit over gross loss; inf without losses, 0 without either"""
    gross_profit = sum(t.pnl for t in result.trades if t.pnl > 0)
    gross_loss = abs(sum(t.pnl for t in result.trades if t.pnl < 0))
    if gross_loss > 0:
        return gross_profit / gross_loss
    return math.inf if gross_profit > 0 else 0.0


def calculate_optimization_score(result: BacktestResult, target: str) -> float:
    """
    Score a backtest for the given optimization target

    Args:
        result: Completed backtest
        target: One of OPTIMIZATION_TARGETS

    Returns:
        Score where higher is better

    Raises:
        ValidationError: If the target is unknown
    """
    if target == 'win_rate':
        return result.win_rate
    if target == 'net_pnl':
        return result.net_pnl
    if target == 'sharpe_ratio':
        return sharpe_ratio(result)
    if target == 'profit_factor':
        return profit_factor(result)
    raise ValidationError(
        f"Unknown optimization target '{target}'", details=sorted(OPTIMIZATION_TARGETS)
    )
