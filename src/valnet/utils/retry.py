# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
from typing import Callable, TypeVar

T = TypeVar("T")


class RetryError(RuntimeError):
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    backoff: float = 1.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Bounded retry for idempotent operations.

    attempts: total number of calls, including the first
    delay: seconds before the second attempt
    backoff: multiplier applied to delay after each failure (1.0 = fixed)
    retry_on: exception types that may be retried
    should_retry: predicate on the exception; False re-raises immediately
    on_retry: callback(attempt, exception) after each failed attempt
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    wait = delay
    last_exc = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_exc = exc
            if on_retry:
                on_retry(attempt, exc)
            if attempt == attempts:
                break
            sleep(wait)
            wait *= backoff

    name = getattr(fn, "__name__", "operation")
    raise RetryError(f"{name} failed after {attempts} attempts", attempts) from last_exc
