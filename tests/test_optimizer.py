import asyncio
import threading

import pytest

from smclab.config import merge_with_defaults
from smclab.exceptions import OptimizationError, ValidationError
from smclab.optimizer import OptimizationConfig, optimize, optimize_sync
from smclab.optimizer import optimizer as optimizer_module
from smclab.smc_detector import analyze


@pytest.fixture
def market(wave):
    settings = merge_with_defaults({'entry_strategy': 'poi_reaction', 'entry_score_threshold': 1})
    return wave, settings, analyze(wave, settings)


def grid_config(**overrides):
    values = {
        'param_ranges': {'rr_ratio': '1:3:1', 'atr_multiplier': {'min': 1, 'max': 3, 'step': 1}},
        'target': 'net_pnl',
    }
    values.update(overrides)
    return OptimizationConfig.from_dict(values)


def test_grid_of_nine(market):
    candles, settings, bundle = market
    run = optimize_sync(grid_config(), candles, settings, bundle)

    assert run.total_combinations == 9
    assert len(run.results) == 9
    assert sorted(r.combination_index for r in run.results) == list(range(9))
    assert run.best_result.score == max(r.score for r in run.results)
    assert run.best_result is run.results[0]
    keys = [(-r.score, r.combination_index) for r in run.results]
    assert keys == sorted(keys)
    assert run.failed_combinations == 0
    assert not run.cancelled
    assert run.param_ranges['rr_ratio'] == {'min': 1.0, 'max': 3.0, 'step': 1.0}


def test_trials_do_not_touch_base_settings(market):
    candles, settings, bundle = market
    before = settings.to_dict()
    run = optimize_sync(grid_config(), candles, settings, bundle)
    assert settings.to_dict() == before
    assert {r.params['rr_ratio'] for r in run.results} == {1, 2, 3}


def test_progress_is_monotonic(market):
    candles, settings, bundle = market
    updates = []
    optimize_sync(grid_config(), candles, settings, bundle, on_progress=updates.append)

    assert [u['current_combination'] for u in updates] == [5, 9]
    assert updates[-1]['progress'] == 100
    assert all(u['total_combinations'] == 9 for u in updates)
    best = [u['best_score'] for u in updates]
    assert best == sorted(best)


def test_failed_trials_are_excluded(market, monkeypatch):
    candles, settings, bundle = market
    real_backtest = optimizer_module.run_backtest

    def flaky_backtest(candles, trial_settings, trial_bundle, htf_bundle=None):
        if trial_settings.rr_ratio == 2:
            raise RuntimeError("boom")
        return real_backtest(candles, trial_settings, trial_bundle, htf_bundle)

    monkeypatch.setattr(optimizer_module, 'run_backtest', flaky_backtest)
    run = optimize_sync(grid_config(), candles, settings, bundle)

    assert len(run.results) == 6
    assert run.failed_combinations == 3
    assert all(r.params['rr_ratio'] != 2 for r in run.results)


def test_all_trials_failing_raises(market, monkeypatch):
    candles, settings, bundle = market

    def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(optimizer_module, 'run_backtest', broken)
    with pytest.raises(OptimizationError):
        optimize_sync(grid_config(), candles, settings, bundle)


def test_cancellation_between_batches(market):
    candles, settings, bundle = market
    cancel = threading.Event()

    async def run():
        return await optimize(grid_config(), candles, settings, bundle,
                              on_progress=lambda update: cancel.set(), cancel_event=cancel)

    result = asyncio.run(run())
    assert result.cancelled
    assert len(result.results) == 5


def test_async_progress_callback_is_awaited(market):
    candles, settings, bundle = market
    seen = []

    async def on_progress(update):
        await asyncio.sleep(0)
        seen.append(update['progress'])

    asyncio.run(optimize(grid_config(), candles, settings, bundle, on_progress=on_progress))
    assert seen[-1] == 100


def test_threaded_workers_match_sequential(market):
    candles, settings, bundle = market
    sequential = optimize_sync(grid_config(), candles, settings, bundle)
    threaded = optimize_sync(grid_config(workers=3), candles, settings, bundle)
    assert [(r.combination_index, r.score) for r in threaded.results] == \
        [(r.combination_index, r.score) for r in sequential.results]


def test_max_iterations_samples(market):
    candles, settings, bundle = market
    run = optimize_sync(grid_config(max_iterations=4, seed=11), candles, settings, bundle)
    assert run.total_combinations == 4
    assert len(run.results) == 4
    assert len({tuple(sorted(r.params.items())) for r in run.results}) == 4


def test_period_parameters_refresh_indicators(market):
    candles, settings, bundle = market
    config = OptimizationConfig.from_dict({
        'param_ranges': {'atr_period': '5:15:10'}, 'target': 'win_rate'
    })
    run = optimize_sync(config, candles, settings, bundle)
    assert len(run.results) == 2


@pytest.mark.parametrize('overrides', [
    {'target': 'sortino'},
    {'param_ranges': {}},
    {'param_ranges': {'bogus': '1:2:1'}},
    {'max_iterations': 0},
])
def test_invalid_configuration(market, overrides):
    candles, settings, bundle = market
    with pytest.raises(ValidationError):
        optimize_sync(grid_config(**overrides), candles, settings, bundle)


def test_unknown_option_rejected():
    with pytest.raises(ValidationError):
        OptimizationConfig.from_dict({'param_ranges': {}, 'iterations': 3})
