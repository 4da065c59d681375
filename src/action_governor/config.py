"""Configuration loading from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".action_governor" / "governor.db")
    dispatch_timeout: float = 5.0
    agent_gateway_url: str | None = None
    executor_urls: dict[str, str] = field(default_factory=dict)
    slack_bot_token: str | None = None
    review_channel: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AG_DB_PATH"):
            config.db_path = Path(db)

        if timeout := os.environ.get("AG_DISPATCH_TIMEOUT"):
            config.dispatch_timeout = float(timeout)

        config.agent_gateway_url = os.environ.get("AG_AGENT_GATEWAY_URL")

        if urls := os.environ.get("AG_EXECUTOR_URLS"):
            config.executor_urls = parse_executor_urls(urls)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.review_channel = os.environ.get("AG_REVIEW_CHANNEL")

        if level := os.environ.get("AG_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def parse_executor_urls(raw: str) -> dict[str, str]:
    """Parse ``type=url,type=url`` into a mapping."""
    urls = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            logger.warning("Ignoring malformed AG_EXECUTOR_URLS entry: %r", entry)
            continue
        action_type, url = entry.split("=", 1)
        urls[action_type.strip()] = url.strip()
    return urls


def get_config() -> Config:
    return Config.from_env()
