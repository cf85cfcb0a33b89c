import math

import pytest

from smclab.exceptions import OptimizationError
from smclab.models import BacktestResult, OptimizationRun, TrialResult
from smclab.optimizer.results import (
    analyze_parameter_correlations, analyze_parameter_sensitivity, calculate_correlation,
    calculate_pareto_front, create_histogram, export_results_to_csv,
    generate_heatmap_data, generate_optimization_recommendations,
    generate_optimization_report, process_optimization_results, results_to_frame
)


def trial(index, params, score, win_rate=50.0, net_pnl=0.0, trades=2):
    backtest = BacktestResult(10000.0, 10000.0 + net_pnl, float(net_pnl), net_pnl / 100,
                              float(win_rate), trades)
    return TrialResult(params=params, backtest=backtest, score=score, combination_index=index)


def make_run(results):
    ordered = sorted(results, key=lambda r: (-r.score, r.combination_index))
    return OptimizationRun(
        results=ordered,
        best_result=ordered[0] if ordered else None,
        total_combinations=len(results),
        target='net_pnl',
        param_ranges={name: {'min': 0, 'max': 1, 'step': 1} for name in (results[0].params if results else {})},
        timestamp='2024-01-02T03:04:05+00:00',
    )


def test_correlation_bounds_and_degenerate_cases():
    assert calculate_correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert calculate_correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)
    assert calculate_correlation([1, 1, 1], [1, 2, 3]) == 0
    assert calculate_correlation([1], [1]) == 0
    assert calculate_correlation([1, 2], [1, math.inf]) == 0
    value = calculate_correlation([1, 2, 3, 4], [1, 3, 2, 4])
    assert -1 <= value <= 1


def test_parameter_correlation_status():
    results = [
        trial(0, {'a': 1, 'b': 5}, 10),
        trial(1, {'a': 2, 'b': 5}, 20),
        trial(2, {'a': 3, 'b': 5}, 30),
    ]
    correlations = analyze_parameter_correlations(results)
    assert correlations['a']['status'] == 'computed'
    assert correlations['a']['correlation'] == pytest.approx(1.0)
    assert correlations['a']['direction'] == 'positive'
    assert correlations['a']['interpretation'] == 'strong'
    assert correlations['b'] == {
        'correlation': 0.0, 'strength': 0.0, 'direction': 'neutral',
        'interpretation': 'none', 'status': 'no_variance',
    }

    infinite = [trial(0, {'a': 1}, math.inf), trial(1, {'a': 2}, 5)]
    assert analyze_parameter_correlations(infinite)['a']['status'] == 'insufficient'


def test_histogram():
    histogram = create_histogram([0, 1, 2, 3, 4, 5, 6, 7, 8, 10])
    assert len(histogram) == 10
    assert sum(b['count'] for b in histogram) == 10
    assert histogram[0]['bin_start'] == 0
    assert histogram[-1]['bin_end'] == 10
    assert histogram[-1]['count'] == 1
    assert sum(b['percentage'] for b in histogram) == pytest.approx(100)

    flat = create_histogram([3, 3, 3, math.inf])
    assert flat[0]['count'] == 3
    assert sum(b['count'] for b in flat) == 3
    assert create_histogram([]) == []


def test_heatmap_keeps_best_per_cell():
    results = [
        trial(0, {'x': 1, 'y': 1}, 5),
        trial(1, {'x': 1, 'y': 1}, 7),
        trial(2, {'x': 2, 'y': 1}, 3),
    ]
    heatmap = generate_heatmap_data(results)
    assert (heatmap['param_x'], heatmap['param_y']) == ('x', 'y')
    cells = {(c['x'], c['y']): c['score'] for c in heatmap['data']}
    assert cells == {(1, 1): 7, (2, 1): 3}

    assert generate_heatmap_data([trial(0, {'x': 1}, 1)]) is None


def test_pareto_front():
    results = [
        trial(0, {'a': 0}, 1, win_rate=40, net_pnl=100),
        trial(1, {'a': 1}, 2, win_rate=60, net_pnl=50),
        trial(2, {'a': 2}, 3, win_rate=50, net_pnl=40),
        trial(3, {'a': 3}, 4, win_rate=70, net_pnl=120),
        trial(4, {'a': 4}, 0, win_rate=30, net_pnl=200),
    ]
    front = calculate_pareto_front(results)
    assert [p['params']['a'] for p in front] == [3, 4]


def test_process_and_recommend():
    results = [trial(i, {'rr_ratio': 1 + i, 'ob_weight': 2}, 10.0 * (i + 1)) for i in range(5)]
    processed = process_optimization_results(make_run(results))

    summary = processed['summary']
    assert summary['total_tests'] == 5
    assert summary['best_score'] == 50
    assert summary['worst_score'] == 10
    assert summary['avg_score'] == pytest.approx(30)
    assert summary['best_params'] == {'rr_ratio': 5, 'ob_weight': 2}
    assert processed['statistics']['heatmap'] is not None
    assert len(processed['statistics']['score_distribution']) == 10

    recommendations = generate_optimization_recommendations(processed)
    first = recommendations[0]
    assert first['type'] == 'parameter'
    assert first['param'] == 'rr_ratio'
    assert first['priority'] == 'high'
    assert first['message'].startswith('Increasing TP1 risk/reward')
    assert 'interactions' in first['message']
    general = [r['message'] for r in recommendations if r['type'] == 'general']
    assert len(general) == 3
    assert not any(r.get('param') == 'ob_weight' for r in recommendations)


def test_process_requires_results():
    with pytest.raises(OptimizationError):
        process_optimization_results(make_run([]))


def test_sensitivity_and_report():
    results = [trial(i, {'rr_ratio': 1 + i, 'atr_period': 10}, 10.0 * (i + 1), net_pnl=10.0 * i)
               for i in range(3)]
    sensitivity = analyze_parameter_sensitivity(results)
    assert sensitivity['rr_ratio']['impact'] == pytest.approx(2.0)
    assert sensitivity['atr_period']['impact'] == 0

    report = generate_optimization_report(make_run(results))
    assert report.startswith('# Parameter Optimization Report')
    assert '**Best score:** 30.0000' in report
    assert '- **rr_ratio:** 3' in report
    assert report.index('**rr_ratio:** impact') < report.index('**atr_period:** impact')


def test_csv_export(tmp_path):
    results = [
        trial(4, {'rr_ratio': 2.0}, 12.5, win_rate=60, net_pnl=125, trades=3),
        trial(1, {'rr_ratio': 1.0}, 3.0, win_rate=40, net_pnl=30, trades=5),
    ]
    frame = results_to_frame(results)
    assert list(frame.columns) == ['combination', 'score', 'rr_ratio', 'win_rate', 'net_pnl', 'total_trades']
    assert frame['combination'].tolist() == [4, 1]

    path = tmp_path / 'results.csv'
    text = export_results_to_csv(results, str(path))
    assert path.read_text() == text
    assert text.splitlines()[0] == 'combination,score,rr_ratio,win_rate,net_pnl,total_trades'
    assert text.splitlines()[1] == '4,12.5,2.0,60.0,125.0,3'
    assert export_results_to_csv([]) == ''
