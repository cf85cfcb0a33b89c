"""
Command line interface: analyze, backtest and optimize candle files
"""
import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .backtest import run_backtest
from .config import AppConfig, Settings, load_config, merge_with_defaults
from .data_loader import prepare_data
from .exceptions import SMCError, ValidationError
from .logging_setup import setup_logging
from .models import AnalysisBundle, BacktestResult, OptimizationRun
from .optimizer import (
    OptimizationConfig, generate_optimization_recommendations, generate_optimization_report,
    optimize_sync, process_optimization_results
)
from .optimizer.param_space import (
    PARAM_GROUPS, ParamRange, custom_param_ranges, get_param_display_name, get_param_unit,
    group_param_ranges
)
from .optimizer.results import export_results_to_csv
from .smc_detector import analyze

logger = logging.getLogger(__name__)
console = Console()


def parse_assignments(items: Optional[List[str]], option: str) -> Dict[str, str]:
    """Split repeated name=value options"""
    parsed = {}
    for item in items or []:
        name, sep, value = item.partition('=')
        if not sep or not name:
            raise ValidationError(f"{option} expects name=value, got {item!r}")
        parsed[name.strip()] = value.strip()
    return parsed


def build_settings(config: AppConfig, overrides: Optional[List[str]]) -> Settings:
    """Config-file settings with --set overrides (values parsed as YAML scalars)"""
    raw = {name: yaml.safe_load(value) for name, value in parse_assignments(overrides, '--set').items()}
    return merge_with_defaults(raw, base=config.settings)


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M')


def _load(args: argparse.Namespace, settings: Settings):
    candles, htf_candles = prepare_data(args.data, args.htf)
    bundle = analyze(candles, settings)
    htf_bundle = analyze(htf_candles, settings) if htf_candles else None
    return candles, bundle, htf_bundle


def print_analysis(bundle: AnalysisBundle, candle_count: int) -> None:
    table = Table(title="Market Structure", box=box.ROUNDED)
    table.add_column("Element", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Active", justify="right", style="green")

    table.add_row("Candles", str(candle_count), "-")
    table.add_row("Swing highs", str(len(bundle.swing_highs)),
                  str(sum(1 for s in bundle.swing_highs if not s.grabbed)))
    table.add_row("Swing lows", str(len(bundle.swing_lows)),
                  str(sum(1 for s in bundle.swing_lows if not s.grabbed)))
    table.add_row("Liquidity grabs", str(len(bundle.liquidity_grabs)), "-")
    table.add_row("BOS", str(len(bundle.bos_events)), "-")
    table.add_row("CHoCH", str(len(bundle.choch_events)), "-")
    for label, pois in (("Order blocks", bundle.order_blocks), ("Fair value gaps", bundle.fvgs),
                        ("Breaker blocks", bundle.breaker_blocks)):
        table.add_row(label, str(len(pois)), str(sum(1 for p in pois if not p.is_mitigated)))
    console.print(table)


def print_backtest(result: BacktestResult, show_trades: int) -> None:
    color = "green" if result.net_pnl >= 0 else "red"
    stats = Table(title="Backtest", box=box.SIMPLE)
    stats.add_column("Metric", style="cyan")
    stats.add_column("Value")
    stats.add_row("Starting equity", f"{result.starting_equity:,.2f}")
    stats.add_row("Final equity", f"{result.final_equity:,.2f}")
    stats.add_row("Net P&L", f"[{color}]{result.net_pnl:,.2f} ({result.pnl_percent:.2f}%)[/]")
    stats.add_row("Win rate", f"{result.win_rate:.2f}%")
    stats.add_row("Exits", str(result.total_trades))
    if result.open_trade is not None:
        stats.add_row("Open trade", f"{result.open_trade.direction} @ {result.open_trade.entry_price:.5f}")
    console.print(stats)

    if show_trades <= 0 or not result.trades:
        return

    trades = Table(title=f"Last {min(show_trades, len(result.trades))} exits", box=box.ROUNDED)
    trades.add_column("Exit time", style="cyan")
    trades.add_column("Dir", style="bold")
    trades.add_column("Setup")
    trades.add_column("Entry", style="yellow", justify="right")
    trades.add_column("Exit", justify="right")
    trades.add_column("Reason")
    trades.add_column("P&L", justify="right")
    for t in result.trades[-show_trades:]:
        pnl_color = "green" if t.pnl > 0 else "red" if t.pnl < 0 else "white"
        trades.add_row(_format_time(t.exit_time), t.direction, t.setup_type,
                       f"{t.entry_price:.5f}", f"{t.exit_price:.5f}", t.exit_reason,
                       f"[{pnl_color}]{t.pnl:,.2f}[/]")
    console.print(trades)


def print_optimization(run: OptimizationRun, top: int) -> None:
    names = list(run.param_ranges)
    table = Table(title=f"Top {min(top, len(run.results))} of {len(run.results)} ({run.target})",
                  box=box.ROUNDED)
    table.add_column("#", justify="right")
    table.add_column("Score", style="magenta", justify="right")
    for name in names:
        unit = get_param_unit(name)
        header = get_param_display_name(name)
        table.add_column(f"{header} ({unit})" if unit else header, justify="right")
    table.add_column("Win rate", justify="right")
    table.add_column("Net P&L", justify="right")
    table.add_column("Exits", justify="right")
    for r in run.results[:top]:
        table.add_row(str(r.combination_index), f"{r.score:.4f}",
                      *(str(r.params[n]) for n in names),
                      f"{r.backtest.win_rate:.2f}%", f"{r.backtest.net_pnl:,.2f}",
                      str(r.backtest.total_trades))
    console.print(table)

    if run.failed_combinations:
        console.print(f"[yellow]{run.failed_combinations} combinations failed[/]")
    if run.results:
        for rec in generate_optimization_recommendations(process_optimization_results(run)):
            style = {'high': 'bold', 'medium': '', 'low': 'dim'}[rec['priority']]
            message = escape(rec["message"])
            console.print(f"[{style}]- {message}[/]" if style else f"- {message}")


def cmd_analyze(args: argparse.Namespace, config: AppConfig) -> int:
    settings = build_settings(config, args.set)
    candles, bundle, htf_bundle = _load(args, settings)
    print_analysis(bundle, len(candles))
    if htf_bundle is not None:
        console.print("[bold]Higher timeframe[/]")
        print_analysis(htf_bundle, len(htf_bundle.times))
    if args.json_out:
        with open(args.json_out, 'w', encoding='utf-8') as f:
            json.dump(bundle.to_dict(), f, indent=2)
        logger.info(f"Analysis written to {args.json_out}")
    return 0


def cmd_backtest(args: argparse.Namespace, config: AppConfig) -> int:
    settings = build_settings(config, args.set)
    candles, bundle, htf_bundle = _load(args, settings)
    result = run_backtest(candles, settings, bundle, htf_bundle)
    print_backtest(result, args.show_trades)
    return 0


def build_optimization_config(args: argparse.Namespace, config: AppConfig) -> OptimizationConfig:
    options: Dict[str, Any] = dict(config.optimization)
    cli_ranges = parse_assignments(args.param, '--param')
    if args.group:
        options['param_ranges'] = custom_param_ranges(cli_ranges, base=group_param_ranges(args.group))
        if args.target is None:
            options['target'] = PARAM_GROUPS[args.group]['target']
    elif cli_ranges:
        options['param_ranges'] = {name: ParamRange.parse(text) for name, text in cli_ranges.items()}
    for key in ('target', 'max_iterations', 'seed', 'workers'):
        value = getattr(args, key)
        if value is not None:
            options[key] = value
    return OptimizationConfig.from_dict(options)


def cmd_optimize(args: argparse.Namespace, config: AppConfig) -> int:
    settings = build_settings(config, args.set)
    opt_config = build_optimization_config(args, config)
    candles, bundle, htf_bundle = _load(args, settings)

    with Progress(TextColumn("[cyan]Optimizing"), BarColumn(),
                  TextColumn("{task.completed}/{task.total}"),
                  TextColumn("best {task.fields[best]}"), TimeElapsedColumn(),
                  console=console) as progress:
        task = progress.add_task("optimize", total=None, best="-")

        def on_progress(update: Dict[str, Any]) -> None:
            best = update['best_score']
            progress.update(task, completed=update['current_combination'],
                            total=update['total_combinations'],
                            best=f"{best:.4f}" if best is not None else "-")

        run = optimize_sync(opt_config, candles, settings, bundle, htf_bundle, on_progress)

    print_optimization(run, args.top)

    if args.csv_out:
        export_results_to_csv(run.results, args.csv_out)
    if args.report_out:
        with open(args.report_out, 'w', encoding='utf-8') as f:
            f.write(generate_optimization_report(run))
        logger.info(f"Report written to {args.report_out}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='smclab',
        description='SMC Lab - Smart Money Concepts analysis, backtesting and optimization',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  smclab analyze data/btc_15m.csv
  smclab backtest data/btc_15m.csv --htf data/btc_4h.csv --set entry_strategy=poi_reaction
  smclab optimize data/btc_15m.csv --param rr_ratio=1:3:0.5 --param atr_multiplier=1:3:1 --target net_pnl
  smclab optimize data/btc_15m.csv --group technical --max-iterations 200 --seed 7
        """
    )
    parser.add_argument('--config', default='config/smclab.yaml',
                        help='YAML configuration file (default: config/smclab.yaml)')
    parser.add_argument('--log-level', default=None,
                        help='Logging level (overrides the config file)')

    sub = parser.add_subparsers(dest='command', required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('data', help='Trading timeframe CSV file')
    common.add_argument('--htf', help='Higher timeframe CSV file (for MTA)')
    common.add_argument('--set', action='append', metavar='NAME=VALUE',
                        help='Override a setting; may be repeated')

    analyze_parser = sub.add_parser('analyze', parents=[common], help='Detect market structure')
    analyze_parser.add_argument('--json-out', help='Write the analysis as JSON')

    backtest_parser = sub.add_parser('backtest', parents=[common], help='Run a backtest')
    backtest_parser.add_argument('--show-trades', type=int, default=10,
                                 help='Number of exits to list (default: 10)')

    optimize_parser = sub.add_parser('optimize', parents=[common], help='Optimize parameters')
    optimize_parser.add_argument('--param', action='append', metavar='NAME=MIN:MAX:STEP',
                                 help='Parameter range; may be repeated')
    optimize_parser.add_argument('--group', choices=sorted(PARAM_GROUPS),
                                 help='Optimize a predefined parameter group (--param entries refine it)')
    optimize_parser.add_argument('--target', help='win_rate, net_pnl, sharpe_ratio or profit_factor')
    optimize_parser.add_argument('--max-iterations', type=int, help='Sample this many combinations')
    optimize_parser.add_argument('--seed', type=int, help='Random seed for sampling')
    optimize_parser.add_argument('--workers', type=int, help='Evaluate trials in this many threads')
    optimize_parser.add_argument('--top', type=int, default=10, help='Rows to show (default: 10)')
    optimize_parser.add_argument('--csv-out', help='Export all results to CSV')
    optimize_parser.add_argument('--report-out', help='Write a markdown report')

    return parser


COMMANDS = {
    'analyze': cmd_analyze,
    'backtest': cmd_backtest,
    'optimize': cmd_optimize,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main function with command line argument parsing"""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging(args.log_level or config.log_level, config.log_file)
        return COMMANDS[args.command](args, config)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        return 1
    except SMCError as e:
        logger.debug(f"{e.__class__.__name__}: {e.details}")
        console.print(f"[red]Error:[/] {escape(e.message)}")
        if isinstance(e.details, list):
            for detail in e.details:
                console.print(f"  - {escape(str(detail))}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
