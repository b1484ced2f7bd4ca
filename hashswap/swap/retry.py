"""Bounded exponential backoff for transient chain errors."""

import time
import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from ..errors import TransientChainError, StaleTransaction

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    attempts: int = 3           # Total tries, including the first
    backoff: float = 1.0        # Seconds before the first retry
    max_backoff: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** (attempt - 1)), self.max_backoff)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    description: str = "chain call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `fn`, retrying only TransientChainError.

    Any other error propagates on the first occurrence, and so does
    StaleTransaction: resending the same payload cannot help. When attempts
    run out, the last TransientChainError is re-raised.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except StaleTransaction:
            raise
        except TransientChainError as e:
            if attempt >= policy.attempts:
                log.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay(attempt)
            log.warning(
                f"{description} failed (attempt {attempt}/{policy.attempts}): "
                f"{e}; retrying in {delay:.1f}s"
            )
            sleep(delay)
            attempt += 1
