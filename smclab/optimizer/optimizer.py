"""
Cooperative parameter optimizer

Combinations are evaluated in small batches; control is handed back to the
event loop between batches so a host application stays responsive. With
workers > 1 the trials of a batch run in threads via asyncio.to_thread.
"""
import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..backtest import run_backtest
from ..config.models import Settings, merge_with_defaults
from ..exceptions import OptimizationError, ValidationError
from ..models import AnalysisBundle, Candle, OptimizationRun, TrialResult
from ..smc_detector import refresh_indicators
from .param_space import (
    OPTIMIZATION_TARGETS, ParamRange, Params, coerce_param_ranges, plan_combinations,
    validate_param_ranges
)
from .scoring import calculate_optimization_score

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Any]


@dataclass
class OptimizationConfig:
    """What to optimize and how"""
    param_ranges: Dict[str, ParamRange] = field(default_factory=dict)
    target: str = 'net_pnl'
    max_iterations: Optional[int] = None
    seed: Optional[int] = None
    batch_size: int = 5
    workers: int = 1

    def __post_init__(self):
        self.param_ranges = coerce_param_ranges(self.param_ranges)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'OptimizationConfig':
        known = {'param_ranges', 'target', 'max_iterations', 'seed', 'batch_size', 'workers'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown optimization options: {unknown}", details=unknown)
        return cls(**dict(data))

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []
        if not self.param_ranges:
            errors.append("No parameters selected for optimization")
        if self.target not in OPTIMIZATION_TARGETS:
            errors.append(f"Unknown optimization target: {self.target}")
        if self.max_iterations is not None and self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")
        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")
        if self.workers < 1:
            errors.append("workers must be at least 1")
        errors.extend(validate_param_ranges(self.param_ranges))
        return errors


def evaluate_combination(params: Params, candles: Sequence[Candle], base_settings: Settings,
                         bundle: AnalysisBundle, htf_bundle: Optional[AnalysisBundle],
                         target: str, combination_index: int) -> TrialResult:
    """Backtest one combination on its own Settings instance and score it"""
    settings = merge_with_defaults(params, base=base_settings)
    trial_bundle = refresh_indicators(bundle, candles, settings)
    result = run_backtest(candles, settings, trial_bundle, htf_bundle)
    return TrialResult(
        params=dict(params),
        backtest=result,
        score=calculate_optimization_score(result, target),
        combination_index=combination_index
    )


async def optimize(config: OptimizationConfig, candles: Sequence[Candle],
                   base_settings: Settings, bundle: AnalysisBundle,
                   htf_bundle: Optional[AnalysisBundle] = None,
                   on_progress: Optional[ProgressCallback] = None,
                   cancel_event: Optional[Any] = None) -> OptimizationRun:
    """
    Search the parameter space for the best-scoring settings

    Args:
        config: Parameter ranges, target and sampling options
        candles: Candles the bundle was computed from
        base_settings: Settings for every parameter not being optimized
        bundle: Analysis of `candles`
        htf_bundle: Higher-timeframe analysis for MTA, if any
        on_progress: Called (or awaited) after every batch with a progress dict
        cancel_event: Object with is_set(); checked between batches

    Returns:
        OptimizationRun with results sorted by score (ties by combination index)

    Raises:
        ValidationError: If the configuration or inputs are invalid
        OptimizationError: If no combination could be evaluated
    """
    errors = config.validate()
    if errors:
        raise ValidationError("Invalid optimization configuration", details=errors)

    candles = list(candles)
    if bundle.times and len(bundle.times) != len(candles):
        raise ValidationError(
            f"Analysis covers {len(bundle.times)} candles but {len(candles)} were given"
        )

    plan = plan_combinations(config.param_ranges, config.max_iterations, config.seed)
    logger.info(f"Optimizing {list(config.param_ranges)} for {config.target}: "
                f"{plan.total} combinations ({plan.mode} mode, grid size {plan.grid_size})")

    semaphore = asyncio.Semaphore(config.workers)

    async def run_threaded(index: int, params: Params) -> TrialResult:
        async with semaphore:
            return await asyncio.to_thread(
                evaluate_combination, params, candles, base_settings, bundle,
                htf_bundle, config.target, index
            )

    results: List[TrialResult] = []
    best: Optional[TrialResult] = None
    failed = 0
    done = 0
    cancelled = False
    combinations = enumerate(plan.combinations)

    while True:
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.info(f"Optimization cancelled after {done}/{plan.total} combinations")
            break

        batch = list(itertools.islice(combinations, config.batch_size))
        if not batch:
            break

        if config.workers > 1:
            outcomes = await asyncio.gather(
                *(run_threaded(index, params) for index, params in batch),
                return_exceptions=True
            )
        else:
            outcomes = []
            for index, params in batch:
                try:
                    outcomes.append(evaluate_combination(
                        params, candles, base_settings, bundle, htf_bundle,
                        config.target, index
                    ))
                except Exception as e:
                    outcomes.append(e)

        current_score = None
        for (index, params), outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                failed += 1
                logger.warning(f"Combination {index} failed {params}: {outcome}")
                continue
            results.append(outcome)
            current_score = outcome.score
            if best is None or outcome.score > best.score:
                best = outcome

        done += len(batch)
        if on_progress is not None:
            update = on_progress({
                'progress': done / plan.total * 100,
                'current_combination': done,
                'total_combinations': plan.total,
                'current_params': dict(batch[-1][1]),
                'current_score': current_score,
                'best_score': best.score if best else None,
            })
            if inspect.isawaitable(update):
                await update

        await asyncio.sleep(0)

    if not results and not cancelled:
        raise OptimizationError(
            "No parameter combination produced a result",
            details={'failed_combinations': failed}
        )

    results.sort(key=lambda r: (-r.score, r.combination_index))
    run = OptimizationRun(
        results=results,
        best_result=results[0] if results else None,
        total_combinations=plan.total,
        target=config.target,
        param_ranges={name: rng.to_dict() for name, rng in config.param_ranges.items()},
        timestamp=datetime.now(timezone.utc).isoformat(),
        failed_combinations=failed,
        cancelled=cancelled
    )

    if run.best_result is not None:
        logger.info(f"Best {config.target}: {run.best_result.score:.4f} with "
                    f"{run.best_result.params} ({len(results)} evaluated, {failed} failed)")
    return run


def optimize_sync(config: OptimizationConfig, candles: Sequence[Candle],
                  base_settings: Settings, bundle: AnalysisBundle,
                  htf_bundle: Optional[AnalysisBundle] = None,
                  on_progress: Optional[ProgressCallback] = None) -> OptimizationRun:
    """Blocking wrapper around optimize() for scripts and the CLI"""
    return asyncio.run(optimize(config, candles, base_settings, bundle, htf_bundle, on_progress))
