"""Queue engine configuration loaded from environment variables.

Environment Variables:
    APISYNC_MAX_FAILS: Failure ceiling per queue item (required)
    APISYNC_RETRY_BACKOFF_SECONDS: Lease applied after a failed attempt (required)
    APISYNC_PUSH_LEASE_SECONDS: Lease for claimed push items (default: 300)
    APISYNC_PULL_LEASE_SECONDS: Lease for claimed pull items (default: 3600)
    APISYNC_GLOBAL_PUSH_LIMIT: Max push items per cron run, 0 = unlimited (default: 10000)
    APISYNC_PUSH_BATCH_SIZE: Items per push batch when a mapping sets no limit (default: 50)
    APISYNC_PULL_TIME_LIMIT: Drain deadline in seconds, 0 = until empty (default: 30)
    APISYNC_PULL_MAX_QUEUE_SIZE: Skip populating when the pull queue is this full (default: 100000)
    APISYNC_STANDALONE: Allow the on-demand endpoints for every mapping (default: false)
    APISYNC_CRON_KEY: Shared secret for the on-demand endpoints
    APISYNC_LOG_LEVEL: error, warning or notice (default: error)
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ..api.exceptions import ConfigurationError
from .domain.entities import RetryPolicy

load_dotenv()

PUSH_QUEUE_NAME = "apisync_push"
PULL_QUEUE_NAME = "apisync_pull"

LOG_LEVELS = ("error", "warning", "notice")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class SyncSettings:
    """Settings shared by the push and pull queue processors."""
    max_fails: int
    retry_backoff_seconds: float
    push_lease_seconds: float = 300
    pull_lease_seconds: float = 3600
    global_push_limit: int = 10000
    push_batch_size: int = 50
    pull_time_limit: float = 30
    pull_max_queue_size: int = 100000
    standalone: bool = False
    cron_key: Optional[str] = None
    log_level: str = "error"

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"APISYNC_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'",
                missing_keys=["APISYNC_LOG_LEVEL"],
            )
        try:
            RetryPolicy(max_fails=self.max_fails, backoff_seconds=self.retry_backoff_seconds)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid retry policy: {e}",
                missing_keys=["APISYNC_MAX_FAILS", "APISYNC_RETRY_BACKOFF_SECONDS"],
                cause=e,
            )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_fails=self.max_fails,
            backoff_seconds=self.retry_backoff_seconds,
        )

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Load settings, failing on missing ceiling/backoff.

        Raises:
            ConfigurationError: If a required variable is missing or malformed
        """
        missing = [
            key for key in ("APISYNC_MAX_FAILS", "APISYNC_RETRY_BACKOFF_SECONDS")
            if not os.getenv(key)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )

        try:
            return cls(
                max_fails=int(os.environ["APISYNC_MAX_FAILS"]),
                retry_backoff_seconds=float(os.environ["APISYNC_RETRY_BACKOFF_SECONDS"]),
                push_lease_seconds=float(os.getenv("APISYNC_PUSH_LEASE_SECONDS", "300")),
                pull_lease_seconds=float(os.getenv("APISYNC_PULL_LEASE_SECONDS", "3600")),
                global_push_limit=int(os.getenv("APISYNC_GLOBAL_PUSH_LIMIT", "10000")),
                push_batch_size=int(os.getenv("APISYNC_PUSH_BATCH_SIZE", "50")),
                pull_time_limit=float(os.getenv("APISYNC_PULL_TIME_LIMIT", "30")),
                pull_max_queue_size=int(os.getenv("APISYNC_PULL_MAX_QUEUE_SIZE", "100000")),
                standalone=_env_bool("APISYNC_STANDALONE"),
                cron_key=os.getenv("APISYNC_CRON_KEY") or None,
                log_level=os.getenv("APISYNC_LOG_LEVEL", "error").lower(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}", cause=e)

    def __repr__(self):
        return (
            f"SyncSettings("
            f"max_fails={self.max_fails}, "
            f"backoff={self.retry_backoff_seconds}s, "
            f"push_lease={self.push_lease_seconds}s, "
            f"pull_lease={self.pull_lease_seconds}s, "
            f"pull_time_limit={self.pull_time_limit}s, "
            f"standalone={self.standalone}, "
            f"cron_key={'set' if self.cron_key else 'unset'})"
        )
