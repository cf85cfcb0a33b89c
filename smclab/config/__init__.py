"""
Configuration package for SMC analysis and backtesting
"""

from .models import (
    Settings, AppConfig, DEFAULT_SETTINGS, ENTRY_STRATEGIES, HTF_BIAS_OPTIONS,
    merge_with_defaults, diff_settings, apply_settings, with_overrides
)
from .loader import ConfigLoader, load_config, save_config

__all__ = [
    'Settings', 'AppConfig', 'DEFAULT_SETTINGS', 'ENTRY_STRATEGIES', 'HTF_BIAS_OPTIONS',
    'merge_with_defaults', 'diff_settings', 'apply_settings', 'with_overrides',
    'ConfigLoader', 'load_config', 'save_config'
]
