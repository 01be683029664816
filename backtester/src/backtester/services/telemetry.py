"""Telemetry publisher for backtest runs.

``BacktestTelemetry`` is the telemetry collaborator of the engine and the
job processor.  It turns status changes, metric samples and log lines
into event payloads and publishes them on an event bus under three fixed
topics:

* ``backtest_status``: ``{run_id, status, message, payload}``
* ``backtest_metric``: ``{run_id, name, value, unit}``
* ``backtest_log``: ``{run_id, level, message}``

Telemetry is best effort.  A failing bus is logged and never aborts the
run that produced the event.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STATUS_TOPIC = "backtest_status"
METRIC_TOPIC = "backtest_metric"
LOG_TOPIC = "backtest_log"


class BacktestTelemetry:
    def __init__(self, event_bus: Any) -> None:
        if event_bus is None or not hasattr(event_bus, "publish"):
            raise RuntimeError("event_bus must implement publish() for backtest telemetry")
        self.event_bus = event_bus

    async def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            await self.event_bus.publish(topic, payload)
        except Exception as exc:
            logger.warning("Failed to publish %s event for run %s: %s", topic, payload.get("run_id"), exc)

    async def publish_status(
        self,
        run_id: str,
        status: str,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish a run status change.

        Parameters
        ----------
        run_id : str
            Identifier of the run.
        status : str
            Lower-case status name, e.g. ``"running"`` or ``"completed"``.
        message : str, optional
            Human readable detail, typically the error of a failed run.
        payload : dict, optional
            Extra fields such as ``is_resuming`` or the final metrics.
        """
        await self._publish(
            STATUS_TOPIC,
            {"run_id": run_id, "status": status, "message": message, "payload": payload or {}},
        )

    async def publish_metric(self, run_id: str, name: str, value: float, unit: str = "") -> None:
        await self._publish(METRIC_TOPIC, {"run_id": run_id, "name": name, "value": float(value), "unit": unit})

    async def publish_log(self, run_id: str, level: str, message: str) -> None:
        await self._publish(LOG_TOPIC, {"run_id": run_id, "level": level, "message": message})
