"""Runtime configuration for zae-reconciler.

Option dataclasses validate themselves on construction. Defaults can be
overridden through environment variables, which the CLI in turn lets
command-line options override.
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field

from .exceptions import ConfigurationError

STATE_ENV_VAR = "ZAER_STATE"
"""Environment variable for the default local state file path."""

STATE_TABLE_ENV_VAR = "ZAER_STATE_TABLE"
"""Environment variable selecting a DynamoDB state table instead of a file."""

MAX_CONCURRENCY_ENV_VAR = "ZAER_MAX_CONCURRENCY"
"""Environment variable for the default per-batch concurrency limit."""

MAX_ATTEMPTS_ENV_VAR = "ZAER_MAX_ATTEMPTS"
"""Environment variable for the default provider call attempt bound."""

DEFAULT_STATE_PATH = "zae-reconciler.state.json"
DEFAULT_STATE_KEY = "default"
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_TTL_SECONDS = 3600


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for transient provider failures.

    Attributes:
        max_attempts: Total attempts per step, including the first
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for a single delay
        multiplier: Growth factor between attempts
        jitter: Use full jitter (uniform between 0 and the computed delay)
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts", self.max_attempts, "must be at least 1")
        if self.base_delay < 0:
            raise ConfigurationError("base_delay", self.base_delay, "must not be negative")
        if self.max_delay < self.base_delay:
            raise ConfigurationError("max_delay", self.max_delay, "must be >= base_delay")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier", self.multiplier, "must be >= 1")

    def delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        computed = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            return random.uniform(0, computed)
        return computed


@dataclass(frozen=True)
class ExecutorOptions:
    """
    Options for plan execution.

    Attributes:
        max_concurrency: Steps of one batch running at the same time
        retry: Backoff policy for transient failures
        step_timeout: Seconds before a single provider call counts as a
                      transient timeout (None = no limit)
        lock_ttl_seconds: Lease duration of the state lock
    """

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    step_timeout: float | None = None
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency", self.max_concurrency, "must be at least 1")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ConfigurationError("step_timeout", self.step_timeout, "must be positive")
        if self.lock_ttl_seconds < 1:
            raise ConfigurationError("lock_ttl_seconds", self.lock_ttl_seconds, "must be positive")

    @classmethod
    def from_env(cls) -> ExecutorOptions:
        """Build options from ZAER_* environment variables."""
        return cls(
            max_concurrency=_env_int(MAX_CONCURRENCY_ENV_VAR, DEFAULT_MAX_CONCURRENCY),
            retry=RetryPolicy(max_attempts=_env_int(MAX_ATTEMPTS_ENV_VAR, DEFAULT_MAX_ATTEMPTS)),
        )


def default_state_path() -> str:
    """Local state path from ZAER_STATE, or the default file name."""
    return os.environ.get(STATE_ENV_VAR) or DEFAULT_STATE_PATH


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(name, raw, "must be an integer") from None
