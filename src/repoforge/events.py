"""Structured run events.

The pipeline never writes to a shared log sink directly. Instead it emits
RunEvent objects to an injected sink, which lets the CLI log them, the run
log persist them, and tests assert on them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted during a run."""

    # Run lifecycle
    RUN_START = "run_start"
    RUN_COMPLETE = "run_complete"
    RUN_FAILED = "run_failed"

    # Stage tracking
    STAGE_START = "stage_start"
    STAGE_COMPLETE = "stage_complete"

    # File operations
    FILE_RESOLVED = "file_resolved"
    FILE_WRITTEN = "file_written"


TERMINAL_EVENTS = (EventType.RUN_COMPLETE, EventType.RUN_FAILED)


@dataclass
class RunEvent:
    """A single event emitted by a run."""

    type: EventType
    stage: str
    correlation_id: str
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Convert event to dictionary."""
        return {
            "type": self.type.value,
            "stage": self.stage,
            "correlation_id": self.correlation_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class EventSink(Protocol):
    """Anything that accepts run events."""

    def emit(self, event: RunEvent) -> None:
        ...


class LoggingEventSink:
    """Forwards events to the standard logging module."""

    def __init__(self, logger_name: str = "repoforge.run"):
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: RunEvent) -> None:
        level = logging.ERROR if event.type == EventType.RUN_FAILED else logging.INFO
        if event.type == EventType.FILE_RESOLVED:
            level = logging.DEBUG
        summary = ", ".join(f"{k}={v}" for k, v in event.data.items() if k != "error")
        message = f"[{event.correlation_id[:8]}] {event.stage}: {event.type.value}"
        if summary:
            message += f" ({summary})"
        if event.type == EventType.RUN_FAILED:
            message += f" - {event.data.get('error', '')}"
        self._logger.log(level, message)


class RecordingEventSink:
    """Keeps every emitted event in memory."""

    def __init__(self) -> None:
        self.events: list[RunEvent] = []

    def emit(self, event: RunEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[RunEvent]:
        """Return recorded events of one type, in emission order."""
        return [e for e in self.events if e.type == event_type]

    @property
    def stages(self) -> list[str]:
        """Stage names of completed stages, in order."""
        return [e.stage for e in self.of_type(EventType.STAGE_COMPLETE)]


class FanoutEventSink:
    """Dispatches each event to several sinks.

    A failing sink is logged and skipped so observability problems never
    abort a run.
    """

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: RunEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error(f"Error in event sink {type(sink).__name__}: {e}")


class RunEmitter:
    """Binds a sink to one run's correlation id."""

    def __init__(self, sink: Optional[EventSink], correlation_id: str):
        self.sink = sink if sink is not None else LoggingEventSink()
        self.correlation_id = correlation_id

    def __call__(self, event_type: EventType, stage: str, **data: Any) -> None:
        event = RunEvent(
            type=event_type,
            stage=stage,
            correlation_id=self.correlation_id,
            data=data,
        )
        try:
            self.sink.emit(event)
        except Exception as e:
            logger.error(f"Error in event sink: {e}")
