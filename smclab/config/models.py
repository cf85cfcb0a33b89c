"""
Configuration models for SMC analysis, backtesting and optimization
"""
import math
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..exceptions import ConfigurationError

ENTRY_STRATEGIES = ('reversal_confirmation', 'poi_reaction')
HTF_BIAS_OPTIONS = ('both', 'long_only', 'short_only')

# Confluence weights are left unnormalized; only their range is bounded
MAX_CONFLUENCE_WEIGHT = 10


@dataclass(frozen=True)
class Settings:
    """Analysis and backtest settings; instances are never mutated"""

    # Market selection (pass-through)
    symbol: str = "BTCUSDT"
    interval: str = "15m"
    higher_timeframe: str = "4h"

    # Display toggles (pass-through)
    show_liquidity: bool = True
    show_bos: bool = True
    show_choch: bool = True
    show_order_blocks: bool = True
    show_breaker_blocks: bool = True
    show_fvgs: bool = True
    show_mitigated: bool = False

    # Risk management
    investment_amount: float = 10000.0
    risk_per_trade: float = 1.0  # percent of equity
    rr_ratio: float = 2.0
    rr_ratio_tp2: float = 3.0
    enable_breakeven: bool = True
    setup_expiration_candles: int = 30

    # Entry strategy
    entry_strategy: str = "reversal_confirmation"
    htf_bias: str = "both"
    confirm_on_bos: bool = False
    entry_score_threshold: float = 3.0

    # Confluence weights
    ob_weight: float = 2.0
    breaker_weight: float = 2.0
    mta_weight: float = 2.0
    ema_weight: float = 1.0
    liquidity_grab_weight: float = 1.0
    inducement_weight: float = 3.0
    recent_liquidity_grab_lookback: int = 20

    # Indicators
    enable_trend_filter: bool = False
    ema_period: int = 50
    enable_atr: bool = True
    atr_period: int = 14
    atr_multiplier: float = 2.0

    # Multi-timeframe analysis
    enable_mta: bool = False

    # Killzones
    enable_killzone_filter: bool = False
    use_london_killzone: bool = True
    use_new_york_killzone: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# (min, max) inclusive; None means unbounded on that side
SETTING_RANGES: Dict[str, Tuple[Optional[float], Optional[float]]] = {
    'investment_amount': (0.0, None),
    'risk_per_trade': (0.0, 100.0),
    'rr_ratio': (0.0, None),
    'rr_ratio_tp2': (0.0, None),
    'setup_expiration_candles': (0, None),
    'entry_score_threshold': (0, None),
    'ob_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'breaker_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'mta_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'ema_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'liquidity_grab_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'inducement_weight': (0, MAX_CONFLUENCE_WEIGHT),
    'recent_liquidity_grab_lookback': (0, None),
    'ema_period': (1, None),
    'atr_period': (1, None),
    'atr_multiplier': (0.0, None),
}

# Fields whose value must be strictly positive
STRICTLY_POSITIVE = {'investment_amount', 'risk_per_trade'}

CHOICES: Dict[str, Tuple[str, ...]] = {
    'entry_strategy': ENTRY_STRATEGIES,
    'htf_bias': HTF_BIAS_OPTIONS,
}

DEFAULT_SETTINGS = Settings()

_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw value to the declared type of `name` or fail"""
    expected = _FIELD_TYPES[name]

    if expected is bool:
        if isinstance(value, bool):
            return value
        raise ConfigurationError(f"Setting '{name}' must be a boolean, got {value!r}")

    if expected is str:
        if isinstance(value, str):
            return value
        raise ConfigurationError(f"Setting '{name}' must be a string, got {value!r}")

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"Setting '{name}' must be numeric, got {value!r}")

    if not math.isfinite(value):
        raise ConfigurationError(f"Setting '{name}' must be finite, got {value!r}")

    if expected is int:
        if float(value) != int(value):
            raise ConfigurationError(f"Setting '{name}' must be an integer, got {value!r}")
        return int(value)

    return float(value)


def _check_range(name: str, value: Any) -> None:
    if name in CHOICES and value not in CHOICES[name]:
        raise ConfigurationError(
            f"Setting '{name}' must be one of {CHOICES[name]}, got {value!r}"
        )

    bounds = SETTING_RANGES.get(name)
    if bounds is None:
        return
    low, high = bounds
    if low is not None and value < low:
        raise ConfigurationError(f"Setting '{name}' below minimum {low}: {value}")
    if high is not None and value > high:
        raise ConfigurationError(f"Setting '{name}' above maximum {high}: {value}")
    if name in STRICTLY_POSITIVE and value <= 0:
        raise ConfigurationError(f"Setting '{name}' must be positive: {value}")


def merge_with_defaults(partial: Optional[Mapping[str, Any]] = None,
                        base: Settings = DEFAULT_SETTINGS) -> Settings:
    """
    Build a validated Settings from `base` overridden by `partial`.

    Args:
        partial: Mapping of setting names to raw values
        base: Settings providing every value not in `partial`

    Returns:
        New Settings instance

    Raises:
        ConfigurationError: On unknown keys, wrong types or out-of-range values
    """
    partial = dict(partial or {})
    unknown = sorted(set(partial) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigurationError(f"Unknown settings: {unknown}", details=unknown)

    values = base.to_dict()
    for name, raw in partial.items():
        values[name] = _coerce(name, raw)

    for name, value in values.items():
        _check_range(name, value)

    return Settings(**values)


def diff_settings(old: Settings, new: Settings) -> Dict[str, Tuple[Any, Any]]:
    """Return {name: (old_value, new_value)} for every changed setting"""
    changes = {}
    for f in fields(Settings):
        before = getattr(old, f.name)
        after = getattr(new, f.name)
        if before != after:
            changes[f.name] = (before, after)
    return changes


def apply_settings(current: Settings,
                   changes: Mapping[str, Any]) -> Tuple[Settings, Dict[str, Tuple[Any, Any]]]:
    """Apply a partial update and return the new settings with the change set"""
    updated = merge_with_defaults(changes, base=current)
    return updated, diff_settings(current, updated)


def with_overrides(settings: Settings, **overrides) -> Settings:
    """Validated copy of `settings` with keyword overrides"""
    return merge_with_defaults(overrides, base=settings)


@dataclass
class AppConfig:
    """Top-level configuration file contents"""
    settings: Settings = DEFAULT_SETTINGS
    optimization: Dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Invalid log level: {self.log_level}")
        if not isinstance(self.optimization, dict):
            errors.append("'optimization' section must be a mapping")
        return errors
