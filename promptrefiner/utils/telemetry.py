from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from promptrefiner.agents.types import TelemetryEvent, TelemetrySink


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryTelemetry:
    """
    Bounded event buffer, newest first, for debug views.
    """

    def __init__(self, max_events: int = 200) -> None:
        """
        Initialize the in-memory telemetry buffer.

        Args:
            max_events (int, optional): Maximum number of events kept. Defaults to 200.
        """
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)

    def record(self, event: TelemetryEvent) -> None:
        self._events.appendleft(event)

    @property
    def events(self) -> list[TelemetryEvent]:
        return list(self._events)

    def kinds(self) -> list[str]:
        """
        Return event kinds oldest first.

        Returns:
            list[str]: The recorded kinds in emission order.
        """
        return [e.kind for e in reversed(self._events)]

    def clear(self) -> None:
        self._events.clear()


class LoguruTelemetry:
    """
    Writes events to the application log at DEBUG level.
    """

    def record(self, event: TelemetryEvent) -> None:
        logger.debug("[telemetry] {} {} {}", event.timestamp, event.kind, event.payload)


class Telemetry:
    """
    Stamps events and forwards them to a sink.

    Recording is best effort: a failing sink is logged and otherwise ignored
    so that orchestration is never interrupted by observability.
    """

    def __init__(
        self,
        sink: TelemetrySink | None = None,
        enabled: bool = True,
        clock: Callable[[], str] | None = None,
    ) -> None:
        """
        Initialize the Telemetry wrapper.

        Args:
            sink (TelemetrySink | None, optional): Where events go. Defaults to None (no-op).
            enabled (bool, optional): Whether events are recorded. Defaults to True.
            clock (Callable[[], str] | None, optional): Timestamp source. Defaults to UTC ISO time.
        """
        self.sink = sink
        self.enabled = enabled
        self.clock = clock or _iso_now

    def emit(self, kind: str, payload: dict[str, Any] | None = None) -> None:
        """
        Record one event if telemetry is enabled.

        Args:
            kind (str): The event kind.
            payload (dict[str, Any] | None, optional): Event data. Defaults to None.
        """
        if not self.enabled or self.sink is None:
            return
        try:
            self.sink.record(
                TelemetryEvent(timestamp=self.clock(), kind=kind, payload=payload or {})
            )
        except Exception as e:
            logger.warning("Telemetry sink failed for '{}': {}", kind, e)
