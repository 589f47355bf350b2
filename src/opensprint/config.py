"""Configuration loading from environment variables."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class FailurePolicy:
    """Retry / demote / block thresholds applied by the failure handler."""

    backoff_failure_threshold: int = 3
    max_priority_before_block: int = 4
    max_infra_retries: int = 2
    max_merge_failures: int = 6


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".opensprint" / "opensprint.db")
    worktree_base: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "opensprint-worktrees"
    )
    loop_interval: float = 30.0
    heartbeat_interval: float = 10.0
    agent_inactivity_timeout: float = 300.0
    max_attempt_duration: float = 3600.0
    reaper_interval: float = 60.0
    failure_policy: FailurePolicy = field(default_factory=FailurePolicy)
    slack_bot_token: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("OPENSPRINT_DB_PATH"):
            config.db_path = Path(db)

        if base := os.environ.get("OPENSPRINT_WORKTREE_BASE"):
            config.worktree_base = Path(base)

        if interval := os.environ.get("OPENSPRINT_LOOP_INTERVAL"):
            config.loop_interval = float(interval)

        if interval := os.environ.get("OPENSPRINT_HEARTBEAT_INTERVAL"):
            config.heartbeat_interval = float(interval)

        if timeout := os.environ.get("OPENSPRINT_AGENT_TIMEOUT"):
            config.agent_inactivity_timeout = float(timeout)

        if max_duration := os.environ.get("OPENSPRINT_MAX_ATTEMPT_SECONDS"):
            config.max_attempt_duration = float(max_duration)

        if interval := os.environ.get("OPENSPRINT_REAPER_INTERVAL"):
            config.reaper_interval = float(interval)

        if threshold := os.environ.get("OPENSPRINT_BACKOFF_THRESHOLD"):
            config.failure_policy.backoff_failure_threshold = int(threshold)

        if max_priority := os.environ.get("OPENSPRINT_MAX_PRIORITY_BEFORE_BLOCK"):
            config.failure_policy.max_priority_before_block = int(max_priority)

        if retries := os.environ.get("OPENSPRINT_MAX_INFRA_RETRIES"):
            config.failure_policy.max_infra_retries = int(retries)

        if merge_failures := os.environ.get("OPENSPRINT_MAX_MERGE_FAILURES"):
            config.failure_policy.max_merge_failures = int(merge_failures)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if level := os.environ.get("OPENSPRINT_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
