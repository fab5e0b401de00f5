from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from emissor_nfe.config import get_max_attempts
from emissor_nfe.services.exceptions import GatewayTemporaryError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]


def emission_policy(max_attempts: int | None = None) -> RetryPolicy:
    """Policy for one emission job: only temporary gateway failures are retried."""
    return RetryPolicy(
        max_attempts=max_attempts if max_attempts is not None else get_max_attempts(),
        base_delay=5.0,
        max_delay=60.0,
        backoff_factor=2.0,
        jitter=0.25,
        retryable_exceptions=(GatewayTemporaryError,),
    )


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay with exponential backoff and jitter.

    *attempt* is 0-indexed (0 = delay after first failure).
    """
    delay = policy.base_delay * (policy.backoff_factor**attempt)
    delay = min(delay, policy.max_delay)
    jitter_range = delay * policy.jitter
    delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


def retry_call(
    func: Callable[[int], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Execute *func(attempt)* with retry per *policy*, re-raising on exhaustion.

    *attempt* is 1-indexed so callers can tell the last try apart.
    """
    last_exc: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return func(attempt + 1)
        except policy.retryable_exceptions as exc:
            last_exc = exc
            if attempt < policy.max_attempts - 1:
                delay = _calc_delay(attempt, policy)
                logger.warning(
                    "Retry %d/%d after %s (%.1fs delay)",
                    attempt + 1,
                    policy.max_attempts,
                    type(exc).__name__,
                    delay,
                )
                sleep_func(delay)
    raise last_exc  # type: ignore[misc]
