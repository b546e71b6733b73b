"""Bounded exponential backoff for transient cloud errors.

Newly created EC2 resources are eventually consistent: a subnet returned by
CreateSubnet may not be visible to ModifySubnetAttribute for a few seconds.
``with_retry`` re-runs an operation while a caller-supplied classifier
says the error is transient and attempts remain, then re-raises the last
error unchanged.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from .config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff schedule.

    Delay for attempt n (0-based) is ``base * factor**n`` plus a random
    jitter of up to ``jitter`` times that delay.
    """

    steps: int = 10
    base_seconds: float = 1.0
    factor: float = 1.5
    jitter: float = 1.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> Backoff:
        return cls(
            steps=config.steps,
            base_seconds=config.base_seconds,
            factor=config.factor,
            jitter=config.jitter,
        )

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry (steps - 1 values)."""
        delay = self.base_seconds
        for _ in range(self.steps - 1):
            wait = delay
            if self.jitter > 0:
                wait += random.uniform(0, delay * self.jitter)
            yield wait
            delay *= self.factor


def with_retry(
    operation: Callable[[], T],
    retryable: Callable[[BaseException], bool],
    backoff: Backoff,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying while retryable(error) approves and steps remain.

    Args:
        operation: Zero-argument callable to run.
        retryable: Classifier deciding whether an error is transient.
        backoff: Retry schedule; ``steps`` is the total attempt count.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The operation's result on the first success.

    Raises:
        Exception: The first non-retryable error, or the last error once
            attempts are exhausted.
    """
    delays = backoff.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            if not retryable(e):
                raise
            wait = next(delays, None)
            if wait is None:
                logger.warning(
                    "Retry attempts exhausted",
                    extra={"attempts": attempt, "error": str(e)},
                )
                raise
            logger.debug(
                "Transient error, retrying",
                extra={
                    "attempt": attempt,
                    "max_attempts": backoff.steps,
                    "wait_seconds": wait,
                    "error": str(e),
                },
            )
            sleep(wait)
