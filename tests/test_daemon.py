"""Tests for daemon wiring, single-pass mode and lifecycle."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.logging import RichHandler

from report_relay.channel import TelegramChannelClient
from report_relay.config import RelayConfig
from report_relay.daemon import ReportRelayDaemon
from report_relay.models import FileState


@pytest.fixture
def config(tmp_path: Path) -> RelayConfig:
    """Create a test configuration."""
    cfg = RelayConfig()
    cfg.reports_folder = tmp_path / "reports"
    cfg.ledger_file = tmp_path / "state" / "sent_files.txt"
    cfg.stats_file = tmp_path / "state" / "statistics.json"
    cfg.log_file = tmp_path / "logs" / "relay.log"
    cfg.settle_delay = 0.0
    cfg.shutdown_timeout = 0.5
    return cfg


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.send_document = AsyncMock(return_value=None)
    client.send_text = AsyncMock(return_value=None)
    return client


@pytest.fixture
def daemon(config: RelayConfig, client: MagicMock) -> ReportRelayDaemon:
    """Create a daemon instance."""
    return ReportRelayDaemon(config, client)


class TestDaemonInit:
    """Tests for daemon initialization."""

    def test_components_share_collaborators(self, daemon: ReportRelayDaemon, client: MagicMock) -> None:
        assert daemon.executor.client is client
        assert daemon.notifier.client is client
        assert daemon.pipeline.executor is daemon.executor
        assert daemon.pipeline.watcher is daemon.watcher
        assert daemon.rate_limiter.max_per_window == 10

    def test_builds_telegram_client_when_missing(self, config: RelayConfig) -> None:
        config.bot_token = "123:abc"
        config.chat_id = "-1001"

        daemon = ReportRelayDaemon(config)

        assert isinstance(daemon.client, TelegramChannelClient)
        assert daemon.client.chat_id == "-1001"

    def test_logging_handlers(self, daemon: ReportRelayDaemon, config: RelayConfig) -> None:
        handlers = daemon.logger.handlers

        assert daemon.logger.name == "report-relay"
        assert len(handlers) == 2
        assert isinstance(handlers[0], RichHandler)
        assert isinstance(handlers[1], logging.FileHandler)
        assert config.log_file.parent.exists()

    def test_recreating_daemon_does_not_duplicate_handlers(self, config: RelayConfig, client: MagicMock) -> None:
        ReportRelayDaemon(config, client)
        daemon = ReportRelayDaemon(config, client)

        assert len(daemon.logger.handlers) == 2


class TestLogLevelValidation:
    """Tests for log_level validation in daemon init."""

    def test_invalid_log_level_raises(self, config: RelayConfig, client: MagicMock) -> None:
        config.log_level = "INVALID"

        with pytest.raises(ValueError, match="Invalid log_level"):
            ReportRelayDaemon(config, client)

    def test_lowercase_level_accepted(self, config: RelayConfig, client: MagicMock) -> None:
        config.log_level = "debug"

        daemon = ReportRelayDaemon(config, client)

        assert daemon.logger.level == logging.DEBUG


class TestRunOnce:
    """Tests for the single-pass mode."""

    @pytest.mark.asyncio
    async def test_delivers_existing_reports(
        self, daemon: ReportRelayDaemon, config: RelayConfig, client: MagicMock
    ) -> None:
        config.reports_folder.mkdir()
        (config.reports_folder / "a_user.pdf").write_bytes(b"%PDF-1.4")
        (config.reports_folder / "b_warn.pdf").write_bytes(b"%PDF-1.4")
        (config.reports_folder / "readme.pdf").write_bytes(b"%PDF-1.4")

        results = await daemon.run_once()

        assert sorted(r.path.name for r in results) == ["a_user.pdf", "b_warn.pdf"]
        assert all(r.state is FileState.DELIVERED for r in results)
        assert client.send_document.await_count == 2
        assert len(config.ledger_file.read_text().splitlines()) == 2
        assert config.stats_file.exists()

    @pytest.mark.asyncio
    async def test_second_pass_sends_nothing(
        self, config: RelayConfig, client: MagicMock
    ) -> None:
        config.reports_folder.mkdir()
        (config.reports_folder / "a_user.pdf").write_bytes(b"%PDF-1.4")

        await ReportRelayDaemon(config, client).run_once()
        results = await ReportRelayDaemon(config, client).run_once()

        assert results == []
        assert client.send_document.await_count == 1

    @pytest.mark.asyncio
    async def test_creates_reports_folder(self, daemon: ReportRelayDaemon, config: RelayConfig) -> None:
        assert await daemon.run_once() == []
        assert config.reports_folder.is_dir()

    @pytest.mark.asyncio
    async def test_folder_creation_failure_propagates(
        self, daemon: ReportRelayDaemon, config: RelayConfig, tmp_path: Path
    ) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config.reports_folder = blocker / "reports"

        with pytest.raises(OSError):
            await daemon.run_once()

    @pytest.mark.asyncio
    async def test_requires_credentials_for_telegram(self, config: RelayConfig) -> None:
        daemon = ReportRelayDaemon(config)

        with pytest.raises(ValueError, match="bot_token and chat_id"):
            await daemon.run_once()
        await daemon.client.close()


class TestRunDaemon:
    """Tests for the continuous mode."""

    @pytest.mark.asyncio
    async def test_run_and_stop(self, daemon: ReportRelayDaemon, config: RelayConfig, client: MagicMock) -> None:
        config.reports_folder.mkdir()
        report = config.reports_folder / "daily_server.pdf"
        report.write_bytes(b"%PDF-1.4")

        runner = asyncio.create_task(daemon.run_daemon())
        async with asyncio.timeout(5):
            while not daemon.ledger.contains(report):
                await asyncio.sleep(0.01)
        daemon.stop()
        await asyncio.wait_for(runner, timeout=5)

        messages = [c.args[0] for c in client.send_text.await_args_list]
        assert messages[0].startswith("🚀 Report relay started")
        assert messages[-1].startswith("⏹️ Report relay stopped")
        assert "Delivered: 1" in messages[-1]
        assert not daemon.watcher.is_running
