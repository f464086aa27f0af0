"""Main daemon for the report relay."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

from .channel import TelegramChannelClient
from .classifier import FileClassifier
from .executor import DispatchExecutor
from .ledger import SentLedger
from .notifier import Notifier
from .pipeline import IntakePipeline, ProcessResult
from .rate_limiter import SlidingWindowRateLimiter
from .recorder import HealthRecorder
from .watcher import FileWatcher

if TYPE_CHECKING:
    from .channel import ChannelClient
    from .config import RelayConfig


class ReportRelayDaemon:
    """Wires the relay components together and runs them."""

    def __init__(self, config: RelayConfig, client: ChannelClient | None = None) -> None:
        """Initialize the daemon.

        Args:
            config: Relay configuration.
            client: Channel client; a Telegram client is built from the
                configuration when omitted.

        """
        self.config = config
        self.logger = self._setup_logging()

        self._owns_client = client is None
        self.client: ChannelClient = client or TelegramChannelClient(
            config.bot_token,
            config.chat_id,
            api_url=config.api_url,
            timeout=config.request_timeout,
        )

        # Initialize components
        self.ledger = SentLedger(config.ledger_file, self.logger)
        self.classifier = FileClassifier.from_config(config)
        self.rate_limiter = SlidingWindowRateLimiter(config.max_files_per_minute)
        self.executor = DispatchExecutor(
            self.client,
            self.rate_limiter,
            self.logger,
            max_attempts=config.max_retries,
            cooldown=config.cooldown_between_uploads,
            rate_limit_backoff=config.rate_limit_backoff,
            max_file_size=config.max_file_size,
        )
        self.recorder = HealthRecorder(config.audit_capacity, self.logger)
        self.notifier = Notifier(self.client, config, self.logger)
        self.watcher = FileWatcher(config.reports_folder, self.logger, queue_size=config.event_queue_size)
        self.pipeline = IntakePipeline(
            config,
            self.ledger,
            self.classifier,
            self.executor,
            self.recorder,
            self.notifier,
            self.logger,
            watcher=self.watcher,
        )

        self.start_time = datetime.now()

    def _setup_logging(self) -> logging.Logger:
        """Set up logging for the daemon.

        Returns:
            Configured logger instance.

        Raises:
            ValueError: If the configured log level is unknown.

        """
        level = logging.getLevelName(self.config.log_level.upper())
        if not isinstance(level, int):
            msg = f"Invalid log_level: {self.config.log_level}"
            raise ValueError(msg)

        logger = logging.getLogger("report-relay")
        logger.setLevel(level)

        # Clear existing handlers to avoid duplicates if daemon is recreated
        if logger.handlers:
            logger.handlers.clear()

        console_handler = RichHandler(
            console=Console(),
            show_time=True,
            show_path=False,
        )
        console_handler.setLevel(logging.INFO)
        logger.addHandler(console_handler)

        self.config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self.config.log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        logger.addHandler(file_handler)

        return logger

    def _prepare(self) -> None:
        """Create the reports folder and load persisted state.

        Raises:
            ValueError: If the bot token or chat id is missing.
            OSError: If the reports folder cannot be created.

        """
        if self._owns_client and not (self.config.bot_token and self.config.chat_id):
            msg = "bot_token and chat_id must be configured"
            raise ValueError(msg)

        self.config.reports_folder.mkdir(parents=True, exist_ok=True)
        sent = self.ledger.load_all()
        self.logger.info("Loaded %d sent files from %s", len(sent), self.config.ledger_file)
        self.recorder.load(self.config.stats_file)

    def _summary(self) -> str:
        snapshot = self.recorder.snapshot()
        uptime = datetime.now() - self.start_time
        hours, remainder = divmod(int(uptime.total_seconds()), 3600)
        return (
            f"Uptime: {hours}h {remainder // 60}m\n"
            f"Delivered: {snapshot.delivered}\n"
            f"Failed: {snapshot.failed}\n"
            f"Skipped: {snapshot.skipped}"
        )

    async def _close_client(self) -> None:
        if self._owns_client and isinstance(self.client, TelegramChannelClient):
            await self.client.close()

    async def run_once(self) -> list[ProcessResult]:
        """Scan the folder once and deliver what was found.

        Returns:
            Results of every processed task.

        """
        self.logger.info("Starting single relay pass...")
        self._prepare()
        try:
            queued = self.pipeline.scan_directory()
            self.logger.info("Found %d reports to deliver", queued)
            results = await self.pipeline.drain()
            self.pipeline.save_snapshot()
        finally:
            await self._close_client()
        return results

    async def run_daemon(self) -> None:
        """Run the daemon until a shutdown signal arrives."""
        self.logger.info("Starting report relay daemon...")
        self._prepare()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown)

        await self.notifier.startup()
        try:
            await self.pipeline.run()
        except asyncio.CancelledError:
            self.logger.info("Daemon cancelled")
            raise
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            summary = self._summary()
            await self.notifier.shutdown(summary)
            await self._close_client()
            self.logger.info("Daemon stopped. %s", summary.replace("\n", ", "))

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal."""
        self.logger.info("Shutdown signal received")
        self.pipeline.stop()

    def stop(self) -> None:
        """Stop the daemon."""
        self.pipeline.stop()
