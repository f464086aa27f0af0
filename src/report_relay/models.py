"""Core records shared by the intake pipeline and the dispatch executor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .classifier import Destination, Priority


def normalize_path(path: str | Path) -> str:
    """Return the identity used for deduplication: absolute and lowercased."""
    return os.path.abspath(os.fspath(path)).lower()


class EventKind(Enum):
    """Kind of filesystem change reported by the watch facility."""

    CREATED = "created"
    MODIFIED = "modified"
    RENAMED = "renamed"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileEvent:
    """One filesystem change. ``dest_path`` is only set for renames."""

    kind: EventKind
    path: Path
    dest_path: Path | None = None


class FileState(Enum):
    """Lifecycle state of a watched path."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (FileState.DELIVERED, FileState.FAILED, FileState.SKIPPED)


@dataclass
class WatchedFile:
    """In-memory tracking record for one path under consideration.

    Timestamps are readings of the pipeline clock (monotonic seconds).
    ``generation`` increases every time the path starts a new lifecycle so
    that tasks queued for a superseded lifecycle can be recognised and
    discarded.
    """

    path: Path
    size: int
    first_seen: float
    last_event_at: float
    last_event: EventKind
    state: FileState = FileState.QUEUED
    attempts: int = 0
    last_error: str | None = None
    generation: int = 1
    finished_at: float | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def in_progress(self) -> bool:
        return self.state is FileState.IN_FLIGHT


@dataclass(order=True)
class DispatchTask:
    """A unit of work for one pool worker."""

    ready_at: float
    path: Path = field(compare=False)
    destination: Destination = field(compare=False)
    caption: str = field(compare=False)
    priority: Priority = field(compare=False)
    enqueued_at: float = field(compare=False)
    generation: int = field(compare=False, default=1)

    @property
    def key(self) -> str:
        return normalize_path(self.path)
