"""Configuration types for the action executor."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Final

from .env import env_int

DEFAULT_PARALLELISM: Final[int] = 10


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors.

    ``total`` counts attempts, including the first one.
    """

    total: int = 4
    backoff_factor: float = 0.5
    max_backoff_wait: float = 60.0
    respect_retry_after: bool = True
    backoff_jitter: float = 1.0

    def delay(self, attempt: int, *, retry_after: float | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""

        backoff = min(self.max_backoff_wait, self.backoff_factor * (2 ** (attempt - 1)))
        if self.backoff_jitter > 0:
            backoff += random.uniform(0, self.backoff_jitter)  # noqa: S311
        if self.respect_retry_after and retry_after is not None:
            backoff = max(backoff, min(retry_after, self.max_backoff_wait))
        return min(backoff, self.max_backoff_wait)


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    parallelism: int = DEFAULT_PARALLELISM
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    call_timeout_seconds: float | None = None


def get_executor_config(*, parallelism: int | None = None) -> ExecutorConfig:
    resolved = parallelism or env_int("CONVERGE_PARALLELISM", DEFAULT_PARALLELISM)
    return ExecutorConfig(parallelism=resolved)
