"""
Post-processing of optimization runs: statistics, recommendations and export
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..exceptions import OptimizationError
from ..models import OptimizationRun, TrialResult
from .param_space import get_param_display_name

logger = logging.getLogger(__name__)

HISTOGRAM_BINS = 10


def _finite(results: Sequence[TrialResult]) -> List[TrialResult]:
    return [r for r in results if math.isfinite(r.score)]


def create_histogram(values: Sequence[float], bins: int = HISTOGRAM_BINS) -> List[Dict[str, float]]:
    """
    Equal-width histogram of the finite values

    The last bin is closed on the right. When every value is equal they all
    land in the first bin.
    """
    data = np.array([v for v in values if math.isfinite(v)], dtype=float)
    if data.size == 0:
        return []

    low, high = float(data.min()), float(data.max())
    if high == low:
        counts = np.zeros(bins, dtype=int)
        counts[0] = data.size
        edges = np.full(bins + 1, low)
    else:
        counts, edges = np.histogram(data, bins=bins, range=(low, high))

    return [
        {
            'bin_start': float(edges[i]),
            'bin_end': float(edges[i + 1]),
            'count': int(counts[i]),
            'percentage': float(counts[i]) / data.size * 100,
        }
        for i in range(bins)
    ]


def calculate_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation; 0 for fewer than two points, non-finite input or zero variance"""
    if len(x) != len(y) or len(x) < 2:
        return 0.0
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        return 0.0

    dx = xs - xs.mean()
    dy = ys - ys.mean()
    denominator = math.sqrt(float((dx * dx).sum()) * float((dy * dy).sum()))
    if denominator == 0 or not math.isfinite(denominator):
        return 0.0

    correlation = float((dx * dy).sum()) / denominator
    if not math.isfinite(correlation):
        return 0.0
    return max(-1.0, min(1.0, correlation))


def interpret_correlation(correlation: float) -> str:
    strength = abs(correlation)
    if strength >= 0.8:
        return 'strong'
    if strength >= 0.6:
        return 'medium'
    if strength >= 0.3:
        return 'weak'
    return 'none'


def _direction(correlation: float) -> str:
    if correlation > 0:
        return 'positive'
    if correlation < 0:
        return 'negative'
    return 'neutral'


def analyze_parameter_correlations(results: Sequence[TrialResult]) -> Dict[str, Dict[str, Any]]:
    """
    Correlation between each parameter's value and the score

    Each entry carries a status: 'no_variance' when the parameter never
    changed, 'insufficient' with fewer than two finite scores, otherwise
    'computed' (which may still be close to zero).
    """
    if not results:
        return {}

    scored = _finite(results)
    correlations = {}
    for name in results[0].params:
        values = [r.params[name] for r in results]
        if max(values) == min(values):
            status, correlation = 'no_variance', 0.0
        elif len(scored) < 2:
            status, correlation = 'insufficient', 0.0
        else:
            status = 'computed'
            correlation = calculate_correlation(
                [r.params[name] for r in scored], [r.score for r in scored]
            )

        correlations[name] = {
            'correlation': correlation,
            'strength': abs(correlation),
            'direction': _direction(correlation),
            'interpretation': interpret_correlation(correlation),
            'status': status,
        }
    return correlations


def generate_heatmap_data(results: Sequence[TrialResult]) -> Optional[Dict[str, Any]]:
    """Best score per cell when exactly two parameters were optimized"""
    if not results or len(results[0].params) != 2:
        return None

    param_x, param_y = list(results[0].params)
    cells: Dict[tuple, Dict[str, float]] = {}
    for r in results:
        key = (r.params[param_x], r.params[param_y])
        if key not in cells or r.score > cells[key]['score']:
            cells[key] = {'x': key[0], 'y': key[1], 'score': r.score}

    return {'param_x': param_x, 'param_y': param_y, 'data': list(cells.values())}


def calculate_pareto_front(results: Sequence[TrialResult]) -> List[Dict[str, Any]]:
    """Results not dominated on (win_rate, net_pnl), folded in one at a time"""
    front: List[Dict[str, Any]] = []

    for r in results:
        win_rate, net_pnl = r.backtest.win_rate, r.backtest.net_pnl

        dominated = any(
            p['win_rate'] >= win_rate and p['net_pnl'] >= net_pnl and
            (p['win_rate'] > win_rate or p['net_pnl'] > net_pnl)
            for p in front
        )
        if dominated:
            continue

        front = [
            p for p in front
            if not (p['win_rate'] <= win_rate and p['net_pnl'] <= net_pnl and
                    (p['win_rate'] < win_rate or p['net_pnl'] < net_pnl))
        ]
        front.append({
            'params': dict(r.params),
            'win_rate': win_rate,
            'net_pnl': net_pnl,
            'score': r.score,
        })

    return sorted(front, key=lambda p: -p['score'])


def process_optimization_results(run: OptimizationRun) -> Dict[str, Any]:
    """
    Summary and statistics of an optimization run

    Raises:
        OptimizationError: If the run holds no results
    """
    results = run.results
    if not results:
        raise OptimizationError("No valid optimization results")

    scores = [r.score for r in results]
    finite_scores = [s for s in scores if math.isfinite(s)]

    return {
        'summary': {
            'total_tests': len(results),
            'best_score': max(scores),
            'worst_score': min(scores),
            'avg_score': float(np.mean(finite_scores)) if finite_scores else None,
            'target': run.target,
            'best_params': dict(run.best_result.params) if run.best_result else {},
            'failed_combinations': run.failed_combinations,
            'cancelled': run.cancelled,
        },
        'statistics': {
            'score_distribution': create_histogram(scores, HISTOGRAM_BINS),
            'param_correlations': analyze_parameter_correlations(results),
            'heatmap': generate_heatmap_data(results),
            'pareto_front': calculate_pareto_front(results),
        },
    }


def analyze_parameter_sensitivity(results: Sequence[TrialResult]) -> Dict[str, Dict[str, Any]]:
    """Impact of each parameter: |correlation| scaled by the explored range"""
    if not results:
        return {}

    scored = _finite(results)
    sensitivity = {}
    for name in results[0].params:
        values = [r.params[name] for r in results]
        value_range = max(values) - min(values)
        if value_range == 0:
            correlation = 0.0
        else:
            correlation = calculate_correlation(
                [r.params[name] for r in scored], [r.score for r in scored]
            )
        sensitivity[name] = {
            'correlation': abs(correlation),
            'range': value_range,
            'impact': abs(correlation) * value_range,
            'direction': _direction(correlation),
            'interpretation': interpret_correlation(correlation),
        }
    return sensitivity


def generate_optimization_recommendations(processed: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Plain-language tuning hints derived from processed results"""
    summary = processed['summary']
    correlations = processed['statistics'].get('param_correlations') or {}
    recommendations = []

    ranked = sorted(correlations.items(), key=lambda item: -item[1]['strength'])[:5]
    for name, data in ranked:
        strength = data['strength']
        if strength <= 0.2:
            continue

        action = 'Increasing' if data['direction'] == 'positive' else 'Decreasing'
        display_name = get_param_display_name(name)
        if strength > 0.7:
            priority = 'high'
            message = f"{action} {display_name} is likely to improve results significantly ({data['interpretation']} correlation)"
        elif strength > 0.5:
            priority = 'medium'
            message = f"{action} {display_name} may improve results ({data['interpretation']} correlation)"
        else:
            priority = 'low'
            message = f"Consider testing {action.lower()} {display_name} ({data['interpretation']} correlation)"

        if abs(data['correlation']) > 0.3:
            message += ("\nNote: correlation cannot capture interactions between parameters; "
                        "adjust it together with the others")

        recommendations.append({
            'type': 'parameter',
            'priority': priority,
            'message': message,
            'param': name,
            'correlation': data['correlation'],
            'strength': strength,
        })

    avg_score = summary.get('avg_score')
    if avg_score is not None and summary['best_score'] > avg_score * 1.5:
        recommendations.append({
            'type': 'general',
            'priority': 'high',
            'message': 'The best combination clearly beats the average; consider adopting it',
        })

    if summary['total_tests'] < 50:
        recommendations.append({
            'type': 'general',
            'priority': 'medium',
            'message': 'Few combinations were tested; run more for more reliable conclusions',
        })

    recommendations.append({
        'type': 'general',
        'priority': 'medium',
        'message': ('Optimized parameters are a starting point only; re-test them on other '
                    'market conditions and mind interactions between parameters'),
    })
    return recommendations


def results_to_frame(results: Sequence[TrialResult]) -> pd.DataFrame:
    """One row per trial: combination index, score, parameters and headline stats"""
    rows = []
    for r in results:
        row = {'combination': r.combination_index, 'score': r.score}
        row.update(r.params)
        row.update({
            'win_rate': r.backtest.win_rate,
            'net_pnl': r.backtest.net_pnl,
            'total_trades': r.backtest.total_trades,
        })
        rows.append(row)
    return pd.DataFrame(rows)


def export_results_to_csv(results: Sequence[TrialResult], path: Optional[str] = None) -> str:
    """
    Write the trial table as CSV

    Returns:
        The CSV text (also written to `path` when given); empty without results
    """
    if not results:
        return ''
    frame = results_to_frame(results)
    csv_text = frame.to_csv(index=False)
    if path:
        with open(path, 'w', newline='') as f:
            f.write(csv_text)
        logger.info(f"Exported {len(frame)} optimization results to {path}")
    return csv_text


def generate_optimization_report(run: OptimizationRun) -> str:
    """Markdown report of the best combination and parameter sensitivity"""
    lines = [
        "# Parameter Optimization Report",
        "",
        f"**Target:** {run.target}",
        f"**Combinations tested:** {run.total_combinations}",
        f"**Generated:** {datetime.fromisoformat(run.timestamp).strftime('%Y-%m-%d %H:%M:%S %Z')}",
    ]
    if run.failed_combinations:
        lines.append(f"**Failed combinations:** {run.failed_combinations}")
    if run.cancelled:
        lines.append("**Status:** cancelled before completion")
    lines.append("")

    best = run.best_result
    if best is not None:
        result = best.backtest
        lines += ["## Best Combination", "", f"**Best score:** {best.score:.4f}", "", "### Parameters"]
        lines += [f"- **{name}:** {value}" for name, value in best.params.items()]
        lines += [
            "",
            "### Backtest",
            f"- **Final equity:** ${result.final_equity:.2f}",
            f"- **Net P&L:** ${result.net_pnl:.2f}",
            f"- **Return:** {result.pnl_percent:.2f}%",
            f"- **Win rate:** {result.win_rate:.2f}%",
            f"- **Exits:** {result.total_trades}",
        ]

    lines += ["", "## Parameter Sensitivity", ""]
    sensitivity = analyze_parameter_sensitivity(run.results)
    for name, data in sorted(sensitivity.items(), key=lambda item: -item[1]['impact']):
        lines.append(f"- **{name}:** impact {data['impact']:.4f} ({data['direction']})")

    return "\n".join(lines) + "\n"
