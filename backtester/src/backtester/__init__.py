"""
Backtester package for the crypto trading platform.

Contains a deterministic, resumable simulation engine that replays a
trading strategy against historical market data.  Runs are seeded so that
identical inputs produce identical trades, checkpointed so that a crashed
run resumes exactly where it stopped, and scored with performance metrics
such as ROI, Sharpe ratio and maximum drawdown.

Entry points:

* ``backtester_main``: command line runner over a CSV file.
* ``engine.BacktestEngine``: the per-tick simulation loop.
* ``processor.BacktestProcessor``: job lifecycle around the engine.
* ``recovery.RecoveryService``: re-enqueues runs orphaned by a restart.
* ``worker_main``: queue consumer wiring the processor to Redis and the store.
"""

__all__ = [
    "backtester_main",
    "engine",
    "processor",
    "recovery",
    "worker_main",
]
