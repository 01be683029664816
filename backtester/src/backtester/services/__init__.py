"""Service layer for the backtester.

This package exposes the collaborators the backtest engine and job
processor talk to: result persistence, telemetry publishing, Prometheus
metrics, pause requests and the job queue.
"""

from .event_bus import EventBus, RedisEventBus  # noqa: F401
from .job_queue import RedisJobQueue  # noqa: F401
from .result_store import InMemoryResultStore, ResultStore  # noqa: F401
from .telemetry import BacktestTelemetry  # noqa: F401
