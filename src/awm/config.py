"""Configuration loading from an optional JSON file and environment variables."""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".awm")
    max_concurrent_sessions: int = 2
    session_duration: float = 30 * 60.0  # seconds
    drain_interval: float = 5.0
    poll_interval: float = 5.0
    timeout_buffer: float = 60.0
    simulation_delay: float = 2.0
    log_level: str = "info"
    executor_bin: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    webhook_host: str = "127.0.0.1"
    webhook_port: int | None = None

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "daemon.pid"

    @property
    def intake_file(self) -> Path:
        return self.data_dir / "work-queue.json"

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Build a config from a JSON file. A missing file yields the defaults."""
        config = cls()
        try:
            data = json.loads(Path(path).read_text())
        except FileNotFoundError:
            return config

        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key not in known:
                continue
            if key == "data_dir":
                value = Path(value).expanduser()
            setattr(config, key, value)
        return config

    @classmethod
    def from_env(cls) -> "Config":
        data_dir = Path(os.environ.get("AWM_DATA_DIR", Path.home() / ".awm")).expanduser()
        config_path = os.environ.get("AWM_CONFIG") or data_dir / "config.json"
        config = cls.from_file(Path(config_path))

        if "AWM_DATA_DIR" in os.environ:
            config.data_dir = data_dir

        if max_sessions := os.environ.get("AWM_MAX_CONCURRENT_SESSIONS"):
            config.max_concurrent_sessions = int(max_sessions)

        if duration := os.environ.get("AWM_SESSION_DURATION"):
            config.session_duration = float(duration)

        if level := os.environ.get("AWM_LOG_LEVEL"):
            config.log_level = level

        if executor := os.environ.get("AWM_EXECUTOR_BIN"):
            config.executor_bin = executor

        if token := os.environ.get("SLACK_BOT_TOKEN"):
            config.slack_bot_token = token

        if channel := os.environ.get("AWM_SLACK_CHANNEL"):
            config.slack_channel = channel

        if host := os.environ.get("AWM_WEBHOOK_HOST"):
            config.webhook_host = host

        if port := os.environ.get("AWM_WEBHOOK_PORT"):
            config.webhook_port = int(port)

        return config


def get_config() -> Config:
    return Config.from_env()
