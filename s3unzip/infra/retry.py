# s3unzip/infra/retry.py
from __future__ import annotations
import random
import time
import logging
from dataclasses import dataclass
from typing import Callable, TypeVar, Optional

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base: float = 0.2
    factor: float = 2.0
    cap: float = 2.0

    def delay(self, attempt: int) -> float:
        # exponential backoff met jitter (max 25% extra)
        delay = min(self.base * (self.factor ** attempt), self.cap)
        return delay + random.uniform(0, delay * 0.25)


NO_RETRY = RetryPolicy(attempts=1)


def retry_on(
    fn: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    *,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn` until it succeeds or `policy.attempts` is used up. Exceptions for
    which `is_retryable` returns False are raised immediately; the last
    retryable exception is raised once attempts run out.
    """
    attempts = max(1, policy.attempts)
    for i in range(attempts):
        try:
            return fn()
        except Exception as e:
            if is_retryable is not None and not is_retryable(e):
                raise
            if i == attempts - 1:
                raise
            sleep_s = policy.delay(i)
            if on_retry:
                on_retry(i + 1, e, sleep_s)
            else:
                logger.warning("retry #%s in %.2fs due to %r", i + 1, sleep_s, e)
            sleep(sleep_s)
    raise AssertionError("unreachable")
