"""Bounded retry and polling policies with an injectable sleep."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from patchflow.constants import (
    ACCEPT_RETRY_ATTEMPTS,
    ACCEPT_RETRY_DELAY_SECONDS,
    MERGE_POLL_INTERVAL_SECONDS,
    MERGE_POLL_MAX_ATTEMPTS,
)

Sleep = Callable[[float], None]


def no_sleep(_seconds: float) -> None:
    """Sleep replacement for deterministic tests."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-delay retries: ``attempts`` extra tries, each preceded by ``delay`` seconds."""

    attempts: int = ACCEPT_RETRY_ATTEMPTS
    delay: float = ACCEPT_RETRY_DELAY_SECONDS
    sleep: Sleep = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def run(
        self,
        action: Callable[[], object],
        *,
        retry_on: tuple[type[Exception], ...] = (Exception,),
        on_failure: Callable[[int, Exception], None] | None = None,
    ) -> bool:
        """Try ``action`` up to ``attempts`` times; returns whether any try succeeded."""

        for attempt in range(1, self.attempts + 1):
            self.sleep(self.delay)
            try:
                action()
            except retry_on as exc:
                if on_failure is not None:
                    on_failure(attempt, exc)
                continue
            return True
        return False


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """Poll at a fixed interval for at most ``max_attempts`` checks; never unbounded."""

    max_attempts: int = MERGE_POLL_MAX_ATTEMPTS
    interval: float = MERGE_POLL_INTERVAL_SECONDS
    sleep: Sleep = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    def wait_for(self, check: Callable[[], bool]) -> bool:
        """Return True as soon as ``check`` passes; exceptions from ``check`` propagate."""

        for attempt in range(self.max_attempts):
            if check():
                return True
            if attempt + 1 < self.max_attempts:
                self.sleep(self.interval)
        return False


__all__ = ["PollPolicy", "RetryPolicy", "Sleep", "no_sleep"]
