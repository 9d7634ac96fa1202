"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".crew_orchestrator" / "crew.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    claude_bin: str = "claude"
    max_retries: int = 1
    retry_delay: float = 2.0
    task_timeout: float = 30 * 60
    timeout_interval: float = 60.0
    watch_interval: float = 3.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CREW_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("CREW_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CREW_SLACK_CHANNEL")

        if claude_bin := os.environ.get("CREW_CLAUDE_BIN"):
            config.claude_bin = claude_bin

        if retries := os.environ.get("CREW_MAX_RETRIES"):
            config.max_retries = int(retries)

        if delay := os.environ.get("CREW_RETRY_DELAY"):
            config.retry_delay = float(delay)

        if timeout := os.environ.get("CREW_TASK_TIMEOUT"):
            config.task_timeout = float(timeout)

        if interval := os.environ.get("CREW_TIMEOUT_INTERVAL"):
            config.timeout_interval = float(interval)

        if watch := os.environ.get("CREW_WATCH_INTERVAL"):
            config.watch_interval = float(watch)

        if level := os.environ.get("CREW_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
