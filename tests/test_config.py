from dataclasses import FrozenInstanceError

import pytest
import yaml

from smclab.config import (
    AppConfig, DEFAULT_SETTINGS, Settings, apply_settings, diff_settings,
    load_config, merge_with_defaults, save_config, with_overrides
)
from smclab.exceptions import ConfigurationError


def test_merge_fills_defaults():
    settings = merge_with_defaults({'rr_ratio': 3, 'entry_strategy': 'poi_reaction'})
    assert settings.rr_ratio == 3.0
    assert isinstance(settings.rr_ratio, float)
    assert settings.entry_strategy == 'poi_reaction'
    assert settings.atr_period == DEFAULT_SETTINGS.atr_period
    assert merge_with_defaults() == Settings()


def test_integral_float_accepted_for_int_setting():
    settings = merge_with_defaults({'atr_period': 21.0})
    assert settings.atr_period == 21
    assert isinstance(settings.atr_period, int)


@pytest.mark.parametrize('partial', [
    {'atr_period': 14.5},
    {'rr_ratio': 'high'},
    {'enable_atr': 1},
    {'rr_ratio': True},
    {'symbol': 5},
    {'rr_ratio': float('nan')},
    {'atr_multiplier': float('inf')},
])
def test_type_errors(partial):
    with pytest.raises(ConfigurationError):
        merge_with_defaults(partial)


@pytest.mark.parametrize('partial', [
    {'risk_per_trade': 0},
    {'risk_per_trade': 150},
    {'ob_weight': 11},
    {'inducement_weight': -1},
    {'ema_period': 0},
    {'entry_strategy': 'breakout'},
    {'htf_bias': 'sideways'},
])
def test_range_errors(partial):
    with pytest.raises(ConfigurationError):
        merge_with_defaults(partial)


def test_unknown_settings_are_listed():
    with pytest.raises(ConfigurationError) as info:
        merge_with_defaults({'rr': 2, 'zz_top': 1})
    assert info.value.details == ['rr', 'zz_top']


def test_settings_are_immutable():
    with pytest.raises(FrozenInstanceError):
        DEFAULT_SETTINGS.rr_ratio = 5


def test_apply_returns_change_set():
    current = with_overrides(DEFAULT_SETTINGS, rr_ratio=2.5)
    updated, changes = apply_settings(current, {'rr_ratio': 2.5, 'atr_period': 20, 'enable_mta': True})
    assert updated.atr_period == 20
    assert changes == {'atr_period': (14, 20), 'enable_mta': (False, True)}
    assert current.atr_period == 14
    assert diff_settings(updated, updated) == {}


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(str(tmp_path / 'nope.yaml'))
    assert config.settings == DEFAULT_SETTINGS
    assert config.log_level == 'INFO'


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / 'empty.yaml'
    path.write_text('')
    assert load_config(str(path)).settings == DEFAULT_SETTINGS


def test_malformed_yaml(tmp_path):
    path = tmp_path / 'bad.yaml'
    path.write_text('settings: [unclosed\n')
    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_invalid_sections(tmp_path):
    path = tmp_path / 'invalid.yaml'
    path.write_text(yaml.safe_dump({'log_level': 'LOUD'}))
    with pytest.raises(ConfigurationError):
        load_config(str(path))

    path.write_text(yaml.safe_dump({'settings': {'rr_ratio': -1}}))
    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_save_writes_only_changed_settings(tmp_path):
    path = tmp_path / 'nested' / 'smclab.yaml'
    config = AppConfig(
        settings=with_overrides(DEFAULT_SETTINGS, rr_ratio=3.0, entry_strategy='poi_reaction'),
        optimization={'target': 'win_rate'},
        log_level='DEBUG',
    )
    save_config(config, str(path))

    raw = yaml.safe_load(path.read_text())
    assert raw['settings'] == {'rr_ratio': 3.0, 'entry_strategy': 'poi_reaction'}

    loaded = load_config(str(path))
    assert loaded.settings == config.settings
    assert loaded.optimization == {'target': 'win_rate'}
    assert loaded.log_level == 'DEBUG'
