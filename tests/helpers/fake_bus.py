"""Recording event bus for telemetry tests.

``FakeBus`` keeps every ``(topic, payload)`` pair handed to ``publish`` so
that tests can assert on the status, metric and log events of a run.
With ``fail=True`` every publish raises, which is how tests check that
telemetry outages never abort a backtest.
"""

from __future__ import annotations

from typing import Any, List, Tuple


class FakeBus:
    """A minimal event bus used for capturing events in tests."""

    def __init__(self, fail: bool = False) -> None:
        self.events: List[Tuple[str, Any]] = []
        self.fail = fail

    async def publish(self, event_type: str, data: Any) -> None:
        """Record an event.

        Parameters
        ----------
        event_type : str
            The topic the event is published on (e.g. ``"backtest_status"``).
        data : Any
            The event payload.
        """
        if self.fail:
            raise ConnectionError("bus unavailable")
        self.events.append((event_type, data))

    def of(self, event_type: str) -> List[Any]:
        return [data for topic, data in self.events if topic == event_type]
