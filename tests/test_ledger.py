"""Tests for the sent-file ledger."""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from report_relay.ledger import LedgerWriteError, SentLedger


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("test-ledger")


@pytest.fixture
def ledger(tmp_path: Path, logger: logging.Logger) -> SentLedger:
    ledger = SentLedger(tmp_path / "data" / "sent_files.txt", logger)
    ledger.load_all()
    return ledger


class TestSentLedger:
    """Tests for SentLedger."""

    def test_missing_file_loads_empty(self, ledger: SentLedger) -> None:
        assert len(ledger) == 0
        assert not ledger.path.exists()

    def test_add_persists_normalized_path(self, ledger: SentLedger, tmp_path: Path) -> None:
        report = tmp_path / "Reports" / "User_Errors.PDF"

        assert ledger.add(report) is True

        assert ledger.contains(report)
        lines = ledger.path.read_text(encoding="utf-8").splitlines()
        assert lines == [str(report).lower()]

    def test_lookup_is_case_insensitive(self, ledger: SentLedger, tmp_path: Path) -> None:
        ledger.add(tmp_path / "report_user.pdf")

        assert ledger.contains(tmp_path / "REPORT_USER.PDF")

    def test_add_twice_writes_once(self, ledger: SentLedger, tmp_path: Path) -> None:
        report = tmp_path / "report_user.pdf"

        assert ledger.add(report) is True
        assert ledger.add(report) is False

        assert len(ledger.path.read_text(encoding="utf-8").splitlines()) == 1

    def test_survives_reload(self, ledger: SentLedger, tmp_path: Path, logger: logging.Logger) -> None:
        ledger.add(tmp_path / "a_user.pdf")
        ledger.add(tmp_path / "b_server.pdf")

        reloaded = SentLedger(ledger.path, logger)
        loaded = reloaded.load_all()

        assert len(loaded) == 2
        assert reloaded.contains(tmp_path / "b_server.pdf")

    def test_load_skips_blank_lines_and_lowercases(self, tmp_path: Path, logger: logging.Logger) -> None:
        path = tmp_path / "sent.txt"
        path.write_text("/Data/Report_User.pdf\n\n   \n/data/other.pdf\n", encoding="utf-8")
        ledger = SentLedger(path, logger)

        assert ledger.load_all() == {"/data/report_user.pdf", "/data/other.pdf"}

    def test_write_failure_raises(self, ledger: SentLedger, tmp_path: Path) -> None:
        report = tmp_path / "report_user.pdf"

        with patch("report_relay.ledger.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(LedgerWriteError, match="disk full"):
                ledger.add(report)

        assert not ledger.contains(report)

    def test_clear_keeps_backup(self, ledger: SentLedger, tmp_path: Path) -> None:
        ledger.add(tmp_path / "report_user.pdf")

        backup = ledger.clear()

        assert backup is not None
        assert backup.exists()
        assert "report_user.pdf" in backup.read_text(encoding="utf-8")
        assert ledger.path.read_text(encoding="utf-8") == ""
        assert len(ledger) == 0

    def test_clear_without_file(self, ledger: SentLedger) -> None:
        assert ledger.clear() is None

    def test_paths_sorted(self, ledger: SentLedger, tmp_path: Path) -> None:
        ledger.add(tmp_path / "b.pdf")
        ledger.add(tmp_path / "a.pdf")

        assert ledger.paths() == sorted([str(tmp_path / "a.pdf").lower(), str(tmp_path / "b.pdf").lower()])
