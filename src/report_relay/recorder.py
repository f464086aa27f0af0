"""In-memory outcome and health statistics with a JSON snapshot."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .classifier import Destination

OUTCOME_DELIVERED = "delivered"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_INTERRUPTED = "interrupted"


@dataclass
class AuditEvent:
    """One recorded outcome for a file."""

    timestamp: str
    path: str
    file_name: str
    outcome: str
    detail: str = ""
    report_type: str | None = None


@dataclass
class StatsSnapshot:
    """Point-in-time copy of the recorder state."""

    started_at: str
    saved_at: str
    outcomes: dict[str, int] = field(default_factory=dict)
    delivered_by_type: dict[str, int] = field(default_factory=dict)
    queue_depth: int = 0
    peak_queue_depth: int = 0
    watcher_restarts: int = 0
    health_issues: list[str] = field(default_factory=list)
    events: list[AuditEvent] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return self.outcomes.get(OUTCOME_DELIVERED, 0)

    @property
    def failed(self) -> int:
        return self.outcomes.get(OUTCOME_FAILED, 0)

    @property
    def skipped(self) -> int:
        return self.outcomes.get(OUTCOME_SKIPPED, 0)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class HealthRecorder:
    """Collects outcomes for observability.

    The recorder is additive and bounded: the newest ``capacity`` audit
    events are kept, older ones are trimmed. It is not a failure domain, so
    ``record_*`` methods log and swallow their own errors.
    """

    def __init__(self, capacity: int, logger: logging.Logger) -> None:
        """Initialize the recorder.

        Args:
            capacity: Number of audit events kept in memory.
            logger: Logger instance.

        """
        self.logger = logger
        self._lock = threading.Lock()
        self._events: deque[AuditEvent] = deque(maxlen=capacity)
        self._outcomes: Counter[str] = Counter()
        self._by_type: Counter[str] = Counter()
        self._queue_depth = 0
        self._peak_queue_depth = 0
        self._watcher_restarts = 0
        self._health_issues: list[str] = []
        self._started_at = _now()

    def record_outcome(
        self,
        path: str | Path,
        outcome: str,
        detail: str = "",
        destination: Destination | None = None,
    ) -> None:
        """Record a terminal outcome for a file."""
        try:
            event = AuditEvent(
                timestamp=_now(),
                path=str(path),
                file_name=Path(path).name,
                outcome=outcome,
                detail=detail,
                report_type=destination.report_type.value if destination else None,
            )
            with self._lock:
                self._events.append(event)
                self._outcomes[outcome] += 1
                if outcome == OUTCOME_DELIVERED and event.report_type:
                    self._by_type[event.report_type] += 1
        except Exception:
            self.logger.exception("Failed to record outcome for %s", path)

    def record_queue_depth(self, depth: int) -> None:
        with self._lock:
            self._queue_depth = depth
            self._peak_queue_depth = max(self._peak_queue_depth, depth)

    def record_health_issues(self, issues: list[str]) -> None:
        with self._lock:
            self._health_issues = list(issues)

    def record_watcher_restart(self) -> None:
        with self._lock:
            self._watcher_restarts += 1

    def snapshot(self) -> StatsSnapshot:
        """Return a copy of the current statistics."""
        with self._lock:
            return StatsSnapshot(
                started_at=self._started_at,
                saved_at=_now(),
                outcomes=dict(self._outcomes),
                delivered_by_type=dict(self._by_type),
                queue_depth=self._queue_depth,
                peak_queue_depth=self._peak_queue_depth,
                watcher_restarts=self._watcher_restarts,
                health_issues=list(self._health_issues),
                events=list(self._events),
            )

    def save(self, path: Path) -> None:
        """Write the snapshot as JSON, replacing the previous file atomically.

        Args:
            path: Destination file.

        """
        data = asdict(self.snapshot())
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
        self.logger.debug("Statistics saved to %s", path)

    def load(self, path: Path) -> bool:
        """Resume cumulative counters from a previous snapshot.

        A missing or unreadable snapshot is not an error; the recorder then
        starts empty.

        Args:
            path: Snapshot file.

        Returns:
            True if a snapshot was loaded.

        """
        if not path.exists():
            return False
        try:
            with path.open(encoding="utf-8") as f:
                data: dict[str, Any] = json.load(f)
            events = [AuditEvent(**event) for event in data.get("events", [])]
            outcomes = Counter({str(k): int(v) for k, v in data.get("outcomes", {}).items()})
            by_type = Counter({str(k): int(v) for k, v in data.get("delivered_by_type", {}).items()})
            restarts = int(data.get("watcher_restarts", 0))
            peak = int(data.get("peak_queue_depth", 0))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            self.logger.warning("Ignoring unreadable statistics snapshot %s: %s", path, e)
            return False

        with self._lock:
            self._events.extend(events)
            self._outcomes.update(outcomes)
            self._by_type.update(by_type)
            self._watcher_restarts += restarts
            self._peak_queue_depth = max(self._peak_queue_depth, peak)
            if started_at := data.get("started_at"):
                self._started_at = str(started_at)

        self.logger.info("Loaded statistics snapshot with %d events", len(events))
        return True
