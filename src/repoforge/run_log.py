"""JSON run logs.

RunLogWriter is an event sink that collects the events of a single run and
writes them, together with a summary, to a JSON file once the run ends.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .events import TERMINAL_EVENTS, EventType, RunEvent

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Statistics for one orchestration run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    stages_completed: list[str] = field(default_factory=list)
    files_written: list[str] = field(default_factory=list)
    fuzzy_resolutions: int = 0
    failed_stage: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "stages_completed": self.stages_completed,
            "files_written": self.files_written,
            "fuzzy_resolutions": self.fuzzy_resolutions,
            "failed_stage": self.failed_stage,
        }


class RunLogWriter:
    """Event sink that persists a run's events as JSON."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the run log writer.

        Args:
            log_dir: Directory for log files. Defaults to logs/runs.
        """
        self.log_dir = Path(log_dir) if log_dir else Path("logs/runs")
        self.stats = RunStats()
        self.events: list[RunEvent] = []
        self.log_file: Optional[Path] = None
        self.correlation_id: Optional[str] = None

    def emit(self, event: RunEvent) -> None:
        """Record an event; write the log file on the terminal event."""
        if self.correlation_id is None:
            self.correlation_id = event.correlation_id
        self.events.append(event)

        if event.type == EventType.STAGE_COMPLETE:
            self.stats.stages_completed.append(event.stage)
        elif event.type == EventType.FILE_WRITTEN:
            self.stats.files_written.append(str(event.data.get("path", "")))
        elif event.type == EventType.FILE_RESOLVED:
            if str(event.data.get("strategy", "")).startswith("fuzzy"):
                self.stats.fuzzy_resolutions += 1
        elif event.type == EventType.RUN_FAILED:
            self.stats.failed_stage = event.stage

        if event.type in TERMINAL_EVENTS:
            self.finalize(success=event.type == EventType.RUN_COMPLETE)

    def finalize(self, success: bool) -> Optional[Path]:
        """Write the collected events to a JSON file.

        Returns:
            Path of the written log, or None if writing failed.
        """
        self.stats.end_time = datetime.now()
        timestamp = self.stats.start_time.strftime("%Y%m%d_%H%M%S")
        run_id = self.correlation_id or "unknown"
        self.log_file = self.log_dir / f"{timestamp}_{run_id}.json"

        log_data = {
            "run": {
                "correlation_id": run_id,
                "success": success,
            },
            "stats": self.stats.to_dict(),
            "events": [e.to_dict() for e in self.events],
        }

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(log_data, f, indent=2, default=str)
            logger.info(f"Run log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
            return None
        return self.log_file
