"""Configuration management for the report relay daemon."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

TOKEN_ENV_VAR = "REPORT_RELAY_BOT_TOKEN"

_TRUE_STRINGS = frozenset({"true", "yes", "on", "1"})


def parse_bool(value: Any, default: bool) -> bool:
    """Parse a boolean that may arrive as a YAML bool, int or string.

    Args:
        value: Raw value from the config file.
        default: Value to use when ``value`` is None.

    Returns:
        Parsed boolean.

    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def _expand(value: str | Path) -> Path:
    return Path(os.path.expanduser(str(value)))


def _default_data_dir() -> Path:
    return Path.home() / ".local/share/report-relay"


@dataclass
class RelayConfig:
    """Configuration for the report relay daemon."""

    # Folder watched for new report files (non-recursive)
    reports_folder: Path = field(default_factory=lambda: Path.home() / "reports")
    allowed_extensions: list[str] = field(default_factory=lambda: [".pdf"])

    # Telegram
    bot_token: str = ""
    chat_id: str = ""
    api_url: str = "https://api.telegram.org"
    request_timeout: float = 60.0

    # Topic (forum thread) ids per report type
    topic_user_errors: int = 9
    topic_server_errors: int = 7
    topic_warnings: int = 11

    # File name keywords per report type, matched case-insensitively
    filter_user_errors: str = "user"
    filter_server_errors: str = "server"
    filter_warnings: str = "warn"

    # Rate limiting and retry
    max_files_per_minute: int = 10
    max_retries: int = 3
    cooldown_between_uploads: float = 1.0  # seconds, multiplied by attempt number
    rate_limit_backoff: float = 5.0  # seconds, multiplied by 2 ** attempt

    # Performance
    max_concurrent_uploads: int = 3
    event_queue_size: int = 1000
    task_queue_size: int = 500
    max_file_size: int = 50 * 1024 * 1024  # Bot API upload limit

    # Timing (seconds unless stated otherwise)
    settle_delay: float = 3.0
    settle_checks: int = 3
    scan_interval: int = 600
    health_check_interval: int = 300
    cleanup_interval: int = 3600
    stats_save_interval: int = 600
    watch_check_interval: int = 30
    watcher_restart_delay: float = 5.0
    retention_hours: int = 24
    shutdown_timeout: float = 10.0

    # Health thresholds
    max_event_errors: int = 10
    max_queue_size: int = 100
    max_scan_age: int = 7200

    # Storage
    ledger_file: Path = field(default_factory=lambda: _default_data_dir() / "sent_files.txt")
    stats_file: Path = field(default_factory=lambda: _default_data_dir() / "statistics.json")
    audit_capacity: int = 1000

    # Operator notifications
    notify_startup: bool = True
    notify_shutdown: bool = True
    notify_errors: bool = True
    notify_warnings: bool = True

    # Logging
    log_file: Path = field(default_factory=lambda: Path.home() / ".local/state/report-relay/report-relay.log")
    log_level: str = "INFO"

    @classmethod
    def get_config_path(cls) -> Path:
        """Get the default configuration file path."""
        return Path.home() / ".config/report-relay/config.yaml"

    @classmethod
    def load(cls, config_path: Path | None = None) -> RelayConfig:
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Uses default if None.

        Returns:
            Loaded and validated configuration.

        Raises:
            ValueError: If the file is not valid YAML or a value is out of range.

        """
        if config_path is None:
            config_path = cls.get_config_path()

        data: dict[str, Any] = {}
        if config_path.exists():
            with config_path.open(encoding="utf-8") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    msg = f"Invalid YAML in {config_path}: {e}"
                    raise ValueError(msg) from e

        config = cls._from_dict(data)
        if token := os.environ.get(TOKEN_ENV_VAR):
            config.bot_token = token
        config.validate()
        return config

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> RelayConfig:
        """Create config from dictionary."""
        config = cls()

        if "reports_folder" in data:
            config.reports_folder = _expand(data["reports_folder"])
        if "allowed_extensions" in data:
            config.allowed_extensions = [
                ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in data["allowed_extensions"]
            ]

        if "telegram" in data:
            telegram = data["telegram"] or {}
            if "bot_token" in telegram:
                config.bot_token = str(telegram["bot_token"])
            if "chat_id" in telegram:
                config.chat_id = str(telegram["chat_id"])
            if "api_url" in telegram:
                config.api_url = str(telegram["api_url"]).rstrip("/")
            if "request_timeout" in telegram:
                config.request_timeout = float(telegram["request_timeout"])

        if "topics" in data:
            topics = data["topics"] or {}
            if "user_errors" in topics:
                config.topic_user_errors = int(topics["user_errors"])
            if "server_errors" in topics:
                config.topic_server_errors = int(topics["server_errors"])
            if "warnings" in topics:
                config.topic_warnings = int(topics["warnings"])

        if "file_filters" in data:
            filters = data["file_filters"] or {}
            if "user_errors" in filters:
                config.filter_user_errors = str(filters["user_errors"] or "")
            if "server_errors" in filters:
                config.filter_server_errors = str(filters["server_errors"] or "")
            if "warnings" in filters:
                config.filter_warnings = str(filters["warnings"] or "")

        if "rate_limiting" in data:
            limits = data["rate_limiting"] or {}
            if "max_files_per_minute" in limits:
                config.max_files_per_minute = int(limits["max_files_per_minute"])
            if "max_retries" in limits:
                config.max_retries = int(limits["max_retries"])
            if "cooldown_between_uploads" in limits:
                config.cooldown_between_uploads = float(limits["cooldown_between_uploads"])
            if "rate_limit_backoff" in limits:
                config.rate_limit_backoff = float(limits["rate_limit_backoff"])

        if "performance" in data:
            performance = data["performance"] or {}
            if "max_concurrent_uploads" in performance:
                config.max_concurrent_uploads = int(performance["max_concurrent_uploads"])
            if "event_queue_size" in performance:
                config.event_queue_size = int(performance["event_queue_size"])
            if "task_queue_size" in performance:
                config.task_queue_size = int(performance["task_queue_size"])
            if "max_file_size" in performance:
                config.max_file_size = int(performance["max_file_size"])

        if "timing" in data:
            timing = data["timing"] or {}
            for name in ("settle_delay", "watcher_restart_delay", "shutdown_timeout"):
                if name in timing:
                    setattr(config, name, float(timing[name]))
            for name in (
                "settle_checks",
                "scan_interval",
                "health_check_interval",
                "cleanup_interval",
                "stats_save_interval",
                "watch_check_interval",
                "retention_hours",
            ):
                if name in timing:
                    setattr(config, name, int(timing[name]))

        if "health" in data:
            health = data["health"] or {}
            for name in ("max_event_errors", "max_queue_size", "max_scan_age"):
                if name in health:
                    setattr(config, name, int(health[name]))

        if "storage" in data:
            storage = data["storage"] or {}
            if "ledger_file" in storage:
                config.ledger_file = _expand(storage["ledger_file"])
            if "stats_file" in storage:
                config.stats_file = _expand(storage["stats_file"])
            if "audit_capacity" in storage:
                config.audit_capacity = int(storage["audit_capacity"])

        if "notifications" in data:
            notifications = data["notifications"] or {}
            config.notify_startup = parse_bool(notifications.get("startup"), config.notify_startup)
            config.notify_shutdown = parse_bool(notifications.get("shutdown"), config.notify_shutdown)
            config.notify_errors = parse_bool(notifications.get("errors"), config.notify_errors)
            config.notify_warnings = parse_bool(notifications.get("warnings"), config.notify_warnings)

        if "logging" in data:
            logging_cfg = data["logging"] or {}
            if "file" in logging_cfg:
                config.log_file = _expand(logging_cfg["file"])
            if "level" in logging_cfg:
                config.log_level = str(logging_cfg["level"]).upper()

        return config

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a setting is out of range.

        """
        positive = (
            "max_files_per_minute",
            "max_retries",
            "max_concurrent_uploads",
            "event_queue_size",
            "task_queue_size",
            "max_file_size",
            "scan_interval",
            "health_check_interval",
            "cleanup_interval",
            "stats_save_interval",
            "watch_check_interval",
            "retention_hours",
            "audit_capacity",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                msg = f"{name} must be positive, got {getattr(self, name)}"
                raise ValueError(msg)

        non_negative = (
            "cooldown_between_uploads",
            "rate_limit_backoff",
            "settle_delay",
            "settle_checks",
            "watcher_restart_delay",
            "shutdown_timeout",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                msg = f"{name} must not be negative, got {getattr(self, name)}"
                raise ValueError(msg)

        if not isinstance(logging.getLevelName(self.log_level), int):
            msg = f"Invalid log_level: {self.log_level}"
            raise ValueError(msg)

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to YAML file.

        The bot token is not written when it came from the environment.

        Args:
            config_path: Path to save config. Uses default if None.

        """
        if config_path is None:
            config_path = self.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        token = "" if os.environ.get(TOKEN_ENV_VAR) else self.bot_token
        data = {
            "reports_folder": str(self.reports_folder),
            "allowed_extensions": list(self.allowed_extensions),
            "telegram": {
                "bot_token": token,
                "chat_id": self.chat_id,
                "api_url": self.api_url,
                "request_timeout": self.request_timeout,
            },
            "topics": {
                "user_errors": self.topic_user_errors,
                "server_errors": self.topic_server_errors,
                "warnings": self.topic_warnings,
            },
            "file_filters": {
                "user_errors": self.filter_user_errors,
                "server_errors": self.filter_server_errors,
                "warnings": self.filter_warnings,
            },
            "rate_limiting": {
                "max_files_per_minute": self.max_files_per_minute,
                "max_retries": self.max_retries,
                "cooldown_between_uploads": self.cooldown_between_uploads,
                "rate_limit_backoff": self.rate_limit_backoff,
            },
            "performance": {
                "max_concurrent_uploads": self.max_concurrent_uploads,
                "event_queue_size": self.event_queue_size,
                "task_queue_size": self.task_queue_size,
                "max_file_size": self.max_file_size,
            },
            "timing": {
                "settle_delay": self.settle_delay,
                "settle_checks": self.settle_checks,
                "scan_interval": self.scan_interval,
                "health_check_interval": self.health_check_interval,
                "cleanup_interval": self.cleanup_interval,
                "stats_save_interval": self.stats_save_interval,
                "watch_check_interval": self.watch_check_interval,
                "watcher_restart_delay": self.watcher_restart_delay,
                "retention_hours": self.retention_hours,
                "shutdown_timeout": self.shutdown_timeout,
            },
            "health": {
                "max_event_errors": self.max_event_errors,
                "max_queue_size": self.max_queue_size,
                "max_scan_age": self.max_scan_age,
            },
            "storage": {
                "ledger_file": str(self.ledger_file),
                "stats_file": str(self.stats_file),
                "audit_capacity": self.audit_capacity,
            },
            "notifications": {
                "startup": self.notify_startup,
                "shutdown": self.notify_shutdown,
                "errors": self.notify_errors,
                "warnings": self.notify_warnings,
            },
            "logging": {
                "file": str(self.log_file),
                "level": self.log_level,
            },
        }

        with config_path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
