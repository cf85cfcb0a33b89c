"""
Parameter optimization: search space, scoring, the optimizer and result analysis
"""

from .optimizer import OptimizationConfig, evaluate_combination, optimize, optimize_sync
from .param_space import (
    DEFAULT_PARAM_RANGES, OPTIMIZATION_TARGETS, PARAM_GROUPS, ParamRange,
    calculate_combination_count, iter_combinations, plan_combinations
)
from .results import (
    analyze_parameter_sensitivity, export_results_to_csv, generate_optimization_recommendations,
    generate_optimization_report, process_optimization_results
)
from .scoring import calculate_optimization_score

__all__ = [
    'OptimizationConfig', 'evaluate_combination', 'optimize', 'optimize_sync',
    'DEFAULT_PARAM_RANGES', 'OPTIMIZATION_TARGETS', 'PARAM_GROUPS', 'ParamRange',
    'calculate_combination_count', 'iter_combinations', 'plan_combinations',
    'analyze_parameter_sensitivity', 'export_results_to_csv',
    'generate_optimization_recommendations', 'generate_optimization_report',
    'process_optimization_results', 'calculate_optimization_score'
]
