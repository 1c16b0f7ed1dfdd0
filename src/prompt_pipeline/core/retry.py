"""Bounded retry with exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryOptions:
    """Retry bounds; delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    should_retry: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[int, float, BaseException], None] | None = None

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


def backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Delay slept before ``attempt`` (2-based: attempt 2 is the first retry)."""

    if attempt < 2:
        return 0.0
    delay = options.initial_delay * options.backoff_multiplier ** (attempt - 2)
    return min(delay, options.max_delay)


def with_retry(
    operation: Callable[[], T],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` until it succeeds or the retry budget is spent.

    The last error propagates once attempts are exhausted or ``should_retry``
    rejects it. ``on_retry(attempt, delay, error)`` fires once per scheduled
    retry, where ``attempt`` is the number of the attempt about to run.
    """

    opts = options or RetryOptions()
    opts.validate()

    attempt = 1
    while True:
        try:
            return operation()
        except Exception as error:
            if opts.should_retry is not None and not opts.should_retry(error):
                raise
            if attempt >= opts.max_attempts:
                raise
            attempt += 1
            delay = backoff_delay(attempt, opts)
            logger.debug(
                "Retrying after %s (attempt %d/%d, delay %.3fs)",
                type(error).__name__,
                attempt,
                opts.max_attempts,
                delay,
            )
            if opts.on_retry is not None:
                try:
                    opts.on_retry(attempt, delay, error)
                except Exception:  # noqa: BLE001
                    logger.exception("on_retry callback failed (attempt %d)", attempt)
            if delay > 0:
                sleep(delay)
