"""
Backtester CLI entry point.

This module loads historical candles from a CSV file, runs a registered
strategy over the specified time range through the simulation engine and
prints the resulting performance metrics (final value, total return,
annualised Sharpe and Sortino ratios, maximum drawdown, win rate...).

See ``backtester.market_data`` for the accepted CSV layouts.  Rows without
a symbol column belong to the first ``--instruments`` entry.

Environment variables:

* ``LOG_LEVEL``: root log level (default ``INFO``).
* ``BACKTEST_DB_URI``: when set, the run and its results are persisted
  through ``DatabaseResultStore``; otherwise everything stays in memory.
* ``REDIS_HOST`` / ``REDIS_PORT``: when set, telemetry is published on the
  Redis event bus.
* ``BACKTEST_CHECKPOINT_INTERVAL`` / ``BACKTEST_HEARTBEAT_INTERVAL``:
  defaults for the tick intervals.

Example usage:

    python -m backtester.backtester_main momentum data.csv 2024-01-01T00:00:00 2024-01-31T00:00:00 \\
        --instruments BTC,ETH --capital 10000 --seed demo --param price_delta_pct=0.5
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Optional

import pandas as pd

from .config import CheckpointConfig, RunConfig, Settings, SlippageConfig, SlippageModelType
from .engine import BacktestEngine
from .market_data import MarketDataAligner, read_candles_csv
from .metrics import MetricsCalculator, PerformanceMetrics
from .models import BacktestRun, RunStatus
from .services.db_result_store import DatabaseResultStore
from .services.event_bus import RedisEventBus
from .services.telemetry import BacktestTelemetry
from .strategies import default_registry

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run backtests against historical data")
    parser.add_argument("strategy", help="Id of the strategy to backtest (e.g. 'momentum')")
    parser.add_argument("data_file", help="Path to CSV file containing historical candles")
    parser.add_argument("start", help="Start timestamp (ISO 8601)")
    parser.add_argument("end", help="End timestamp (ISO 8601)")
    parser.add_argument("--capital", type=float, default=10_000.0, help="Initial capital in quote currency")
    parser.add_argument("--fee", type=float, default=0.001, help="Fee rate per trade (0.001 = 0.1%%)")
    parser.add_argument("--seed", default=None, help="Deterministic seed (defaults to the run id)")
    parser.add_argument("--instruments", default="BTC", help="Comma separated instrument universe")
    parser.add_argument(
        "--slippage",
        choices=[m.value for m in SlippageModelType],
        default=SlippageModelType.FIXED.value,
        help="Slippage model",
    )
    parser.add_argument("--slippage-bps", type=float, default=None, help="Basis points for fixed slippage")
    parser.add_argument("--checkpoint-interval", type=int, default=None, help="Ticks between checkpoints")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Strategy parameter; may be repeated",
    )
    return parser.parse_args(argv)


def _parse_params(pairs: List[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Strategy parameter must look like KEY=VALUE, got {pair!r}")
        value: Any = raw.strip()
        if value.lower() in ("true", "false"):
            value = value.lower() == "true"
        else:
            try:
                value = float(value)
            except ValueError:
                pass
        params[key.strip()] = value
    return params


def _parse_time(value: str) -> dt.datetime:
    return pd.Timestamp(value).to_pydatetime()


def build_run(args: argparse.Namespace, settings: Settings) -> BacktestRun:
    checkpoint = settings.checkpoint_config()
    if args.checkpoint_interval is not None:
        checkpoint = CheckpointConfig(
            checkpoint_interval=args.checkpoint_interval,
            heartbeat_interval=checkpoint.heartbeat_interval,
        )
    config = RunConfig(
        strategy_id=args.strategy,
        start_date=_parse_time(args.start),
        end_date=_parse_time(args.end),
        initial_capital=args.capital,
        fee_rate=args.fee,
        seed=args.seed,
        strategy_params=_parse_params(args.param),
        instruments=args.instruments.split(","),
        slippage=SlippageConfig(model=SlippageModelType(args.slippage), fixed_bps=args.slippage_bps),
        checkpoint=checkpoint,
    )
    return BacktestRun(id=str(uuid.uuid4()), config=config, user_id="cli", dataset_id=args.data_file)


async def run_backtest(args: argparse.Namespace, settings: Optional[Settings] = None) -> PerformanceMetrics:
    settings = settings or Settings.from_env()
    run = build_run(args, settings)
    config = run.config
    logger.info("Loading data from %s", args.data_file)
    candles = read_candles_csv(args.data_file, config.instruments, config.start_date, config.end_date)
    aligner = MarketDataAligner(candles, max_lookback=config.max_lookback)

    telemetry = None
    if settings.redis_host:
        telemetry = BacktestTelemetry(RedisEventBus(host=settings.redis_host, port=settings.redis_port))

    store = None
    if settings.db_uri:
        store = DatabaseResultStore.from_uri(settings.db_uri)
        await store.init_db()
        await store.create_run(run)
        await store.update_status(run.id, RunStatus.RUNNING)

    engine = BacktestEngine(default_registry(), telemetry=telemetry)
    logger.info("Running %s backtest %s on %d ticks", config.strategy_id, run.id, len(aligner))
    try:
        outcome = await engine.run(run, aligner, store=store)
        results = outcome.results if store is None else await store.load_results(run.id)
        metrics = MetricsCalculator(config.metrics).calculate(
            config.initial_capital,
            results.snapshots,
            results.trades,
            config.duration_days,
            final_value=outcome.final_value,
        )
        if store is not None:
            await store.persist_success(run.id, metrics.to_dict())
    except Exception as exc:
        if store is not None:
            await store.mark_failed(run.id, str(exc))
        raise
    finally:
        if store is not None:
            await store.dispose()

    logger.info(
        "Backtest complete: final value=%.2f, Sharpe=%.3f, Max Drawdown=%.2f%%, Win Rate=%.2f%%",
        metrics.final_value,
        metrics.sharpe_ratio,
        metrics.max_drawdown * 100,
        metrics.win_rate * 100,
    )
    return metrics


def print_metrics(metrics: PerformanceMetrics) -> None:
    print(f"Final Value: {metrics.final_value:.2f}")
    print(f"Total Return: {metrics.total_return * 100:.2f}%")
    print(f"Annualized Return: {metrics.annualized_return * 100:.2f}%")
    print(f"Sharpe Ratio: {metrics.sharpe_ratio:.3f}")
    print(f"Sortino Ratio: {metrics.sortino_ratio:.3f}")
    print(f"Max Drawdown: {metrics.max_drawdown * 100:.2f}%")
    print(f"Volatility: {metrics.volatility:.4f}")
    print(f"Win Rate: {metrics.win_rate * 100:.2f}%")
    print(f"Profit Factor: {metrics.profit_factor:.2f}")
    print(f"Trades: {metrics.total_trades}")


def main(argv: Optional[List[str]] = None) -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    args = parse_args(argv)
    metrics = asyncio.run(run_backtest(args, settings))
    print_metrics(metrics)


if __name__ == "__main__":
    main()
