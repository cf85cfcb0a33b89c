"""
Parameter ranges and combination generation for the optimizer
"""
import itertools
import math
import random
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..config.models import DEFAULT_SETTINGS, Settings, merge_with_defaults
from ..exceptions import ConfigurationError, ValidationError

# Above this many grid points the optimizer switches to random sampling
MAX_GRID_COMBINATIONS = 10000
DEFAULT_SAMPLE_SIZE = 1000

_EPSILON = 1e-9

Params = Dict[str, float]


@dataclass(frozen=True)
class ParamRange:
    """Inclusive [min, max] range walked in `step` increments"""
    min: float
    max: float
    step: float
    default: Optional[float] = None

    @classmethod
    def from_value(cls, value: Any) -> 'ParamRange':
        if isinstance(value, ParamRange):
            return value
        if isinstance(value, Mapping):
            try:
                return cls(min=value['min'], max=value['max'], step=value['step'],
                           default=value.get('default'))
            except KeyError as e:
                raise ValidationError(f"Parameter range is missing {e}", details=dict(value))
        if isinstance(value, str):
            return cls.parse(value)
        raise ValidationError(f"Cannot build a parameter range from {value!r}")

    @classmethod
    def parse(cls, text: str) -> 'ParamRange':
        """Parse 'min:max:step'"""
        parts = text.split(':')
        if len(parts) != 3:
            raise ValidationError(f"Expected 'min:max:step', got {text!r}")
        try:
            low, high, step = (float(p) for p in parts)
        except ValueError:
            raise ValidationError(f"Non-numeric parameter range {text!r}")
        return cls(min=low, max=high, step=step)

    @property
    def count(self) -> int:
        return int(math.floor((self.max - self.min) / self.step + _EPSILON)) + 1

    @property
    def is_integral(self) -> bool:
        return all(float(v).is_integer() for v in (self.min, self.max, self.step))

    def value_at(self, position: int) -> float:
        value = self.min + position * self.step
        if self.is_integral:
            return int(round(value))
        return round(value, 10)

    def values(self) -> List[float]:
        return [self.value_at(i) for i in range(self.count)]

    def to_dict(self) -> Dict[str, Any]:
        data = {'min': self.min, 'max': self.max, 'step': self.step}
        if self.default is not None:
            data['default'] = self.default
        return data


DEFAULT_PARAM_RANGES: Dict[str, ParamRange] = {
    # Weights
    'ob_weight': ParamRange(0, 5, 1, 2),
    'breaker_weight': ParamRange(0, 5, 1, 2),
    'mta_weight': ParamRange(0, 5, 1, 2),
    'ema_weight': ParamRange(0, 3, 1, 1),
    'liquidity_grab_weight': ParamRange(0, 3, 1, 1),
    'inducement_weight': ParamRange(0, 5, 1, 3),

    # Thresholds
    'entry_score_threshold': ParamRange(1, 10, 1, 3),

    # Indicators
    'ema_period': ParamRange(10, 100, 10, 50),
    'atr_period': ParamRange(5, 30, 5, 14),
    'atr_multiplier': ParamRange(1, 4, 0.5, 2),

    # Risk
    'risk_per_trade': ParamRange(0.5, 3, 0.5, 1),
    'rr_ratio': ParamRange(1, 4, 0.5, 2),
    'rr_ratio_tp2': ParamRange(2, 6, 0.5, 3),

    # Other
    'recent_liquidity_grab_lookback': ParamRange(5, 50, 5, 20),
    'setup_expiration_candles': ParamRange(10, 100, 10, 30),
}

PARAM_GROUPS: Dict[str, Dict[str, Any]] = {
    'weights': {
        'name': 'Confluence weights',
        'description': 'Weights that decide POI reaction entries',
        'params': ['ob_weight', 'breaker_weight', 'mta_weight', 'ema_weight',
                   'liquidity_grab_weight', 'inducement_weight'],
        'target': 'win_rate',
    },
    'technical': {
        'name': 'Indicators',
        'description': 'Indicator periods and the ATR stop multiplier',
        'params': ['ema_period', 'atr_period', 'atr_multiplier'],
        'target': 'sharpe_ratio',
    },
    'risk': {
        'name': 'Risk management',
        'description': 'Position risk and take-profit ratios',
        'params': ['risk_per_trade', 'rr_ratio', 'rr_ratio_tp2'],
        'target': 'net_pnl',
    },
    'thresholds': {
        'name': 'Thresholds',
        'description': 'Entry threshold, grab lookback and setup lifetime',
        'params': ['entry_score_threshold', 'recent_liquidity_grab_lookback',
                   'setup_expiration_candles'],
        'target': 'profit_factor',
    },
}

OPTIMIZATION_TARGETS: Dict[str, Dict[str, str]] = {
    'win_rate': {'name': 'Win rate', 'unit': '%'},
    'net_pnl': {'name': 'Net P&L', 'unit': '$'},
    'sharpe_ratio': {'name': 'Sharpe ratio', 'unit': ''},
    'profit_factor': {'name': 'Profit factor', 'unit': ''},
}

_DISPLAY_NAMES = {
    'ob_weight': 'Order block weight',
    'breaker_weight': 'Breaker block weight',
    'mta_weight': 'Multi-timeframe weight',
    'ema_weight': 'EMA weight',
    'liquidity_grab_weight': 'Liquidity grab weight',
    'inducement_weight': 'Inducement weight',
    'entry_score_threshold': 'Entry score threshold',
    'ema_period': 'EMA period',
    'atr_period': 'ATR period',
    'atr_multiplier': 'ATR stop multiplier',
    'risk_per_trade': 'Risk per trade',
    'rr_ratio': 'TP1 risk/reward',
    'rr_ratio_tp2': 'TP2 risk/reward',
    'recent_liquidity_grab_lookback': 'Liquidity grab lookback',
    'setup_expiration_candles': 'Setup expiration',
}

_UNITS = {
    'ema_period': 'bars',
    'atr_period': 'bars',
    'risk_per_trade': '%',
    'recent_liquidity_grab_lookback': 'bars',
    'setup_expiration_candles': 'bars',
}


def get_param_display_name(name: str) -> str:
    return _DISPLAY_NAMES.get(name, name)


def get_param_unit(name: str) -> str:
    return _UNITS.get(name, '')


def group_param_ranges(group: str) -> Dict[str, ParamRange]:
    """Default ranges of the parameters in `group`"""
    if group not in PARAM_GROUPS:
        raise ValidationError(f"Unknown parameter group {group!r}; choose from {sorted(PARAM_GROUPS)}")
    return {name: DEFAULT_PARAM_RANGES[name] for name in PARAM_GROUPS[group]['params']}


def custom_param_ranges(overrides: Optional[Mapping[str, Any]] = None,
                        base: Optional[Mapping[str, ParamRange]] = None) -> Dict[str, ParamRange]:
    """`base` ranges (all defaults when omitted) with `overrides` layered on top"""
    ranges = dict(DEFAULT_PARAM_RANGES if base is None else base)
    for name, value in (overrides or {}).items():
        ranges[name] = ParamRange.from_value(value)
    return ranges


def validate_param_ranges(param_ranges: Mapping[str, ParamRange]) -> List[str]:
    """
    Check every range for shape and for producing valid settings

    Returns:
        List of error messages; empty when the ranges are usable
    """
    errors = []
    numeric = {name for name, value in DEFAULT_SETTINGS.to_dict().items()
               if isinstance(value, (int, float)) and not isinstance(value, bool)}
    integer_fields = {f.name for f in fields(Settings) if f.type is int}

    for name, rng in param_ranges.items():
        if name not in numeric:
            errors.append(f"{name}: not an optimizable setting")
            continue
        if rng.step <= 0:
            errors.append(f"{name}: step must be greater than 0")
            continue
        if rng.min > rng.max:
            errors.append(f"{name}: min must not exceed max")
            continue
        if rng.default is not None and not rng.min <= rng.default <= rng.max:
            errors.append(f"{name}: default must lie between min and max")
        if name in integer_fields and not rng.is_integral:
            errors.append(f"{name}: integer setting needs integral min, max and step")
            continue

        for value in (rng.value_at(0), rng.value_at(rng.count - 1)):
            try:
                merge_with_defaults({name: value})
            except ConfigurationError as e:
                errors.append(f"{name}: {e.message}")
                break

    return errors


def calculate_combination_count(param_ranges: Mapping[str, ParamRange]) -> int:
    """Product of per-parameter value counts"""
    total = 1
    for rng in param_ranges.values():
        total *= rng.count
    return total


def iter_combinations(param_ranges: Mapping[str, ParamRange]) -> Iterator[Params]:
    """Lazy cartesian product; the last parameter varies fastest"""
    names = list(param_ranges)
    for values in itertools.product(*(param_ranges[n].values() for n in names)):
        yield dict(zip(names, values))


def combination_at(param_ranges: Mapping[str, ParamRange], index: int) -> Params:
    """The `index`-th combination of `iter_combinations` without enumerating the grid"""
    total = calculate_combination_count(param_ranges)
    if not 0 <= index < total:
        raise ValidationError(f"Combination index {index} out of range (0..{total - 1})")

    params = {}
    for name in reversed(list(param_ranges)):
        rng = param_ranges[name]
        index, position = divmod(index, rng.count)
        params[name] = rng.value_at(position)
    return {name: params[name] for name in param_ranges}


def sample_combinations(param_ranges: Mapping[str, ParamRange], sample_size: int,
                        seed: Optional[int] = None) -> List[Params]:
    """Distinct grid points drawn uniformly without replacement"""
    total = calculate_combination_count(param_ranges)
    rng = random.Random(seed)
    indices = rng.sample(range(total), min(sample_size, total))
    return [combination_at(param_ranges, i) for i in indices]


@dataclass
class CombinationPlan:
    """Which combinations an optimization run will evaluate"""
    mode: str  # 'grid' or 'random'
    total: int
    grid_size: int
    combinations: Iterator[Params]


def plan_combinations(param_ranges: Mapping[str, ParamRange],
                      max_iterations: Optional[int] = None,
                      seed: Optional[int] = None) -> CombinationPlan:
    """
    Full grid when it is small enough, otherwise a seeded random sample

    An explicit `max_iterations` always samples; a grid above
    MAX_GRID_COMBINATIONS without one samples DEFAULT_SAMPLE_SIZE points.
    """
    grid_size = calculate_combination_count(param_ranges)

    if max_iterations:
        size = min(max_iterations, grid_size)
    elif grid_size > MAX_GRID_COMBINATIONS:
        size = min(DEFAULT_SAMPLE_SIZE, grid_size)
    else:
        return CombinationPlan('grid', grid_size, grid_size, iter_combinations(param_ranges))

    sampled = sample_combinations(param_ranges, size, seed)
    return CombinationPlan('random', len(sampled), grid_size, iter(sampled))


def coerce_param_ranges(raw: Mapping[str, Any]) -> Dict[str, ParamRange]:
    """Build ParamRange objects from mappings, 'min:max:step' strings or ParamRanges"""
    return {name: ParamRange.from_value(value) for name, value in raw.items()}
