"""
SMC Lab - Smart Money Concepts analysis, backtesting and parameter optimization
"""

from .exceptions import SMCError, ValidationError, ConfigurationError, OptimizationError
from .models import Candle, AnalysisBundle, BacktestResult
from .smc_detector import analyze, AnalysisSession
from .backtest import run_backtest, BacktestSession
from .optimizer import optimize, optimize_sync, OptimizationConfig

__version__ = "1.0.0"

__all__ = [
    'SMCError', 'ValidationError', 'ConfigurationError', 'OptimizationError',
    'Candle', 'AnalysisBundle', 'BacktestResult',
    'analyze', 'AnalysisSession',
    'run_backtest', 'BacktestSession',
    'optimize', 'optimize_sync', 'OptimizationConfig',
]
