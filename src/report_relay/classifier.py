"""Route report files to chat topics by file name keywords."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RelayConfig


class ReportType(Enum):
    """Kinds of report the relay knows how to route."""

    USER_ERRORS = "user_errors"
    SERVER_ERRORS = "server_errors"
    WARNINGS = "warnings"


REPORT_TYPE_LABELS = {
    ReportType.USER_ERRORS: "User errors",
    ReportType.SERVER_ERRORS: "Server errors",
    ReportType.WARNINGS: "Warnings",
}


def report_type_label(report_type: ReportType) -> str:
    return REPORT_TYPE_LABELS[report_type]


class Priority(IntEnum):
    """Processing priority, used to order files found by a directory scan."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


# Checked in order; the first group with a matching keyword decides.
PRIORITY_KEYWORDS: tuple[tuple[Priority, tuple[str, ...]], ...] = (
    (Priority.CRITICAL, ("critical", "urgent")),
    (Priority.HIGH, ("high", "important")),
    (Priority.LOW, ("low",)),
)


@dataclass(frozen=True)
class Destination:
    """Chat topic a report is delivered to."""

    report_type: ReportType
    topic_id: int

    @property
    def label(self) -> str:
        return report_type_label(self.report_type)


@dataclass(frozen=True)
class Classification:
    """Result of classifying a file name."""

    destination: Destination
    priority: Priority


def priority_for(file_name: str) -> Priority:
    """Derive the processing priority from file name keywords."""
    lowered = file_name.lower()
    for priority, keywords in PRIORITY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return priority
    return Priority.NORMAL


class FileClassifier:
    """Maps file names to destinations.

    Matching is a case-insensitive substring test against an ordered list of
    keyword rules. The first matching rule wins, so a name such as
    ``user_server_warn.pdf`` goes to whichever rule comes first. Empty
    keywords never match.
    """

    def __init__(self, rules: Sequence[tuple[str, Destination]]) -> None:
        """Initialize the classifier.

        Args:
            rules: Ordered ``(keyword, destination)`` pairs.

        """
        self._rules = tuple((keyword.lower(), destination) for keyword, destination in rules if keyword)

    @classmethod
    def from_config(cls, config: RelayConfig) -> FileClassifier:
        """Build the user → server → warnings rule order from configuration."""
        return cls(
            [
                (config.filter_user_errors, Destination(ReportType.USER_ERRORS, config.topic_user_errors)),
                (config.filter_server_errors, Destination(ReportType.SERVER_ERRORS, config.topic_server_errors)),
                (config.filter_warnings, Destination(ReportType.WARNINGS, config.topic_warnings)),
            ]
        )

    @property
    def rules(self) -> tuple[tuple[str, Destination], ...]:
        return self._rules

    def classify(self, file_name: str) -> Classification | None:
        """Classify a file name.

        Args:
            file_name: Bare file name (no directory).

        Returns:
            Classification, or None if no keyword matches.

        """
        lowered = file_name.lower()
        for keyword, destination in self._rules:
            if keyword in lowered:
                return Classification(destination=destination, priority=priority_for(file_name))
        return None
