import pytest

from smclab.exceptions import ValidationError
from smclab.optimizer.param_space import (
    DEFAULT_PARAM_RANGES, DEFAULT_SAMPLE_SIZE, PARAM_GROUPS, ParamRange,
    calculate_combination_count, combination_at, custom_param_ranges, get_param_display_name,
    get_param_unit, group_param_ranges, iter_combinations, plan_combinations, sample_combinations,
    validate_param_ranges
)


def test_range_values_and_count():
    assert ParamRange(1, 4, 0.5).count == 7
    assert ParamRange(1, 4, 0.5).values() == [1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0]
    assert ParamRange(0, 5, 1).values() == [0, 1, 2, 3, 4, 5]
    assert ParamRange(0, 1, 0.3).values() == [0.0, 0.3, 0.6, 0.9]
    assert ParamRange(0, 0.3, 0.1).count == 4
    assert ParamRange(2, 2, 1).values() == [2]


def test_parse_range():
    assert ParamRange.parse('1:3:0.5') == ParamRange(1.0, 3.0, 0.5)
    assert ParamRange.from_value({'min': 1, 'max': 2, 'step': 1}) == ParamRange(1, 2, 1)
    with pytest.raises(ValidationError):
        ParamRange.parse('1:3')
    with pytest.raises(ValidationError):
        ParamRange.parse('a:b:c')
    with pytest.raises(ValidationError):
        ParamRange.from_value({'min': 1, 'max': 2})


def test_combination_count_is_product():
    ranges = {'rr_ratio': ParamRange(1, 4, 0.5), 'ema_period': ParamRange(10, 30, 10)}
    assert calculate_combination_count(ranges) == 21
    combos = list(iter_combinations(ranges))
    assert len(combos) == 21
    assert combos[0] == {'rr_ratio': 1.0, 'ema_period': 10}
    assert combos[1] == {'rr_ratio': 1.0, 'ema_period': 20}
    assert len({tuple(c.items()) for c in combos}) == 21


def test_combination_at_matches_enumeration():
    ranges = {'ob_weight': ParamRange(0, 2, 1), 'rr_ratio': ParamRange(1, 2, 0.5),
              'atr_period': ParamRange(5, 10, 5)}
    combos = list(iter_combinations(ranges))
    assert [combination_at(ranges, i) for i in range(len(combos))] == combos
    with pytest.raises(ValidationError):
        combination_at(ranges, len(combos))


def test_sampling_is_seeded_and_without_replacement():
    ranges = {'rr_ratio': ParamRange(1, 4, 0.5), 'ema_period': ParamRange(10, 30, 10)}
    sample = sample_combinations(ranges, 10, seed=7)
    assert len(sample) == 10
    assert len({tuple(c.items()) for c in sample}) == 10
    assert sample == sample_combinations(ranges, 10, seed=7)
    assert len(sample_combinations(ranges, 100, seed=7)) == 21


def test_plan_modes():
    small = {'rr_ratio': ParamRange(1, 2, 0.5)}
    plan = plan_combinations(small)
    assert (plan.mode, plan.total) == ('grid', 3)
    assert len(list(plan.combinations)) == 3

    plan = plan_combinations(small, max_iterations=2, seed=1)
    assert (plan.mode, plan.total, plan.grid_size) == ('random', 2, 3)

    large = {'ema_period': ParamRange(1, 101, 1), 'atr_period': ParamRange(1, 101, 1)}
    plan = plan_combinations(large, seed=3)
    assert plan.grid_size == 10201
    assert (plan.mode, plan.total) == ('random', DEFAULT_SAMPLE_SIZE)


def test_default_ranges_are_valid():
    assert validate_param_ranges(DEFAULT_PARAM_RANGES) == []
    grouped = {name for group in PARAM_GROUPS.values() for name in group['params']}
    assert grouped == set(DEFAULT_PARAM_RANGES)


@pytest.mark.parametrize('ranges, fragment', [
    ({'rr_ratio': ParamRange(1, 2, 0)}, 'step'),
    ({'rr_ratio': ParamRange(3, 2, 1)}, 'min'),
    ({'no_such_setting': ParamRange(1, 2, 1)}, 'not an optimizable'),
    ({'entry_strategy': ParamRange(1, 2, 1)}, 'not an optimizable'),
    ({'ema_period': ParamRange(10, 20, 2.5)}, 'integer'),
    ({'risk_per_trade': ParamRange(0, 2, 1)}, 'risk_per_trade'),
    ({'ob_weight': ParamRange(0, 20, 5)}, 'maximum'),
    ({'rr_ratio': ParamRange(1, 2, 1, default=5)}, 'default'),
])
def test_invalid_ranges(ranges, fragment):
    errors = validate_param_ranges(ranges)
    assert len(errors) == 1
    assert fragment in errors[0]


def test_custom_ranges_and_labels():
    ranges = custom_param_ranges({'rr_ratio': '1:2:1'})
    assert ranges['rr_ratio'] == ParamRange(1.0, 2.0, 1.0)
    assert ranges['ema_period'] == DEFAULT_PARAM_RANGES['ema_period']
    assert get_param_display_name('atr_multiplier') == 'ATR stop multiplier'
    assert get_param_display_name('unknown') == 'unknown'
    assert get_param_unit('ema_period') == 'bars'
    assert get_param_unit('rr_ratio') == ''


def test_group_ranges():
    ranges = group_param_ranges('weights')
    assert list(ranges) == PARAM_GROUPS['weights']['params']
    assert ranges['ob_weight'] == DEFAULT_PARAM_RANGES['ob_weight']

    refined = custom_param_ranges({'ob_weight': '0:4:2'}, base=ranges)
    assert set(refined) == set(ranges)
    assert refined['ob_weight'].values() == [0, 2, 4]

    with pytest.raises(ValidationError):
        group_param_ranges('momentum')
