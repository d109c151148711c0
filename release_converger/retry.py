"""
Bounded retry policy shared by the prober and every executor action.

Only TransientIOError is retried. Anything else (a rejected converge, a
refused patch) propagates on the first attempt.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from release_converger.errors import TransientIOError

logger = logging.getLogger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: float = 2.0
    max_backoff: float = 10.0

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, cfg.RETRY_MAX_ATTEMPTS),
            backoff=cfg.RETRY_BACKOFF,
            max_backoff=cfg.RETRY_MAX_BACKOFF,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TransientIOError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> tuple[Any, int]:
        """Run fn under the policy. Returns (value, retries used)."""
        for attempt in self._retrying():
            with attempt:
                value = fn(*args, **kwargs)
        return value, attempt.retry_state.attempt_number - 1
