"""Durable record of files that were already delivered."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from datetime import datetime
from pathlib import Path

from .models import normalize_path


class LedgerWriteError(Exception):
    """Raised when the ledger file cannot be written.

    A ledger that silently stops recording deliveries would cause duplicate
    sends after a restart, so this error is never swallowed.
    """


class SentLedger:
    """Append-only set of normalized paths that were delivered.

    The backing file holds one normalized absolute path per line (UTF-8).
    Every ``add`` appends and fsyncs before returning. Lookups are served
    from memory; mutations are serialized by a single writer lock.
    """

    def __init__(self, path: Path, logger: logging.Logger) -> None:
        """Initialize the ledger. Call ``load_all`` before use.

        Args:
            path: Ledger file location.
            logger: Logger instance.

        """
        self.path = path
        self.logger = logger
        self._sent: set[str] = set()
        self._lock = threading.Lock()

    def load_all(self) -> set[str]:
        """Read the whole ledger file into memory.

        Returns:
            Copy of the loaded set.

        """
        loaded: set[str] = set()
        if self.path.exists():
            with self.path.open(encoding="utf-8") as f:
                for line in f:
                    if entry := line.strip():
                        loaded.add(entry.lower())
            self.logger.info("Loaded %d sent file records from %s", len(loaded), self.path)
        else:
            self.logger.info("Ledger %s not found, starting empty", self.path)

        with self._lock:
            self._sent = loaded
        return set(loaded)

    def contains(self, path: str | Path) -> bool:
        return normalize_path(path) in self._sent

    def add(self, path: str | Path) -> bool:
        """Record a delivered file.

        Args:
            path: Delivered file path.

        Returns:
            True if the path was newly added, False if already present.

        Raises:
            LedgerWriteError: If the entry could not be made durable.

        """
        entry = normalize_path(path)
        with self._lock:
            if entry in self._sent:
                return False
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(entry + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                msg = f"Cannot append to ledger {self.path}: {e}"
                raise LedgerWriteError(msg) from e
            self._sent.add(entry)
        return True

    def clear(self) -> Path | None:
        """Forget every delivered file, keeping a timestamped backup.

        Returns:
            Path of the backup copy, or None if there was no ledger file.

        Raises:
            LedgerWriteError: If the backup or truncation fails.

        """
        with self._lock:
            backup: Path | None = None
            try:
                if self.path.exists():
                    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                    backup = self.path.with_name(f"{self.path.name}.backup.{stamp}")
                    shutil.copy2(self.path, backup)
                    self.path.write_text("", encoding="utf-8")
            except OSError as e:
                msg = f"Cannot clear ledger {self.path}: {e}"
                raise LedgerWriteError(msg) from e
            count = len(self._sent)
            self._sent = set()

        self.logger.info("Cleared %d sent file records (backup: %s)", count, backup)
        return backup

    def paths(self) -> list[str]:
        return sorted(self._sent)

    def __len__(self) -> int:
        return len(self._sent)
