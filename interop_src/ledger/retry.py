"""Retry scheduling for failed transmissions."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """When to retry a transmission that failed to deliver.

    The default is a flat 15-minute delay. With ``exponential`` the delay
    doubles per attempt up to ``max_delay``. After ``max_attempts`` failed
    attempts the transmission is not retried again.
    """
    delay: timedelta = timedelta(minutes=15)
    max_attempts: int = 5
    exponential: bool = False
    max_delay: timedelta = timedelta(hours=4)

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the next try after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        if not self.exponential:
            return self.delay
        return min(self.delay * (2 ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def next_retry_at(self, now: datetime, attempt: int) -> datetime | None:
        """When to retry, or None once retries are exhausted."""
        if self.exhausted(attempt):
            return None
        return now + self.backoff(attempt)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        """Build from RETRY_* settings on a Config class or in a mapping (Flask app.config).

        Settings that are absent keep the policy defaults.
        """
        if isinstance(config, Mapping):
            get = config.get
        else:
            def get(key, default):
                return getattr(config, key, default)

        default = cls()
        return cls(
            delay=timedelta(minutes=get("RETRY_DELAY_MINUTES", default.delay.total_seconds() / 60)),
            max_attempts=get("RETRY_MAX_ATTEMPTS", default.max_attempts),
            exponential=get("RETRY_EXPONENTIAL", default.exponential),
            max_delay=timedelta(
                minutes=get("RETRY_MAX_DELAY_MINUTES", default.max_delay.total_seconds() / 60)
            ),
        )
