"""
Metrics Service
===============

This module provides a service that subscribes to the backtest telemetry
topics on an event bus and exposes them as Prometheus metrics.  It can run
next to the job processor in the same event loop, or in a separate
process when the Redis event bus is used.

Configuration
-------------

* ``PROMETHEUS_PORT``: port on which to expose the metrics HTTP endpoint.
  When unset no HTTP server is started and the metrics are only available
  through the registry.

Metrics
-------

* ``backtest_metric{run_id=...,name=...}``: last value of every metric a
  run publishes (``portfolio_value``, ``final_value``, ``total_return``...).
* ``backtest_active_runs``: number of runs currently executing.
* ``backtest_runs_finished_total{status=...}``: finished runs by outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server

from .telemetry import METRIC_TOPIC, STATUS_TOPIC

logger = logging.getLogger(__name__)

FINISHED_STATUSES = {"completed", "failed", "cancelled"}


class BacktestMetricsService:
    """Subscribe to telemetry events and expose metrics for Prometheus."""

    def __init__(
        self,
        event_bus: Any,
        port: Optional[int] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.event_bus = event_bus
        registry = registry or REGISTRY
        self.metric_gauge = Gauge(
            "backtest_metric",
            "Last value of a metric published by a backtest run",
            labelnames=["run_id", "name"],
            registry=registry,
        )
        self.active_runs_gauge = Gauge(
            "backtest_active_runs",
            "Number of backtest runs currently executing",
            registry=registry,
        )
        self.finished_counter = Counter(
            "backtest_runs_finished",
            "Finished backtest runs by outcome",
            labelnames=["status"],
            registry=registry,
        )
        self._active: set = set()
        if port is not None:
            try:
                start_http_server(port, registry=registry)
            except OSError as exc:
                # Likely already started by another service in this process
                logger.debug("Prometheus server likely already running: %s", exc)

    def handle_metric(self, message: Dict[str, Any]) -> None:
        run_id = message.get("run_id")
        name = message.get("name")
        value = message.get("value")
        if not run_id or not name or value is None:
            logger.debug("Ignoring malformed metric event: %r", message)
            return
        self.metric_gauge.labels(run_id=run_id, name=name).set(float(value))

    def handle_status(self, message: Dict[str, Any]) -> None:
        run_id = message.get("run_id")
        status = str(message.get("status") or "").lower()
        if not run_id or not status:
            logger.debug("Ignoring malformed status event: %r", message)
            return
        if status == "running":
            self._active.add(run_id)
        else:
            self._active.discard(run_id)
        if status in FINISHED_STATUSES:
            self.finished_counter.labels(status=status).inc()
        self.active_runs_gauge.set(len(self._active))

    async def _consume(self, topic: str, handler) -> None:
        async for message in self.event_bus.subscribe(topic):
            if isinstance(message, dict):
                handler(message)

    async def run(self) -> None:
        """Run both subscribers concurrently and never return."""
        if self.event_bus is None:
            logger.error("BacktestMetricsService requires an event bus")
            return
        await asyncio.gather(
            self._consume(METRIC_TOPIC, self.handle_metric),
            self._consume(STATUS_TOPIC, self.handle_status),
        )
