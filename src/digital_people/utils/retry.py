from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int,
    delay_s: float,
    retry_on: tuple[type[BaseException], ...],
    on_retry: Callable[[int, float, BaseException], Any] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """
    Call fn() up to `attempts` times, sleeping `delay_s` between failures.

    Used for shared-storage reads and result copies, where the other side is
    a mount or container that settles on its own. Only `retry_on` errors are
    retried; the last one is re-raised once attempts run out.
    """
    total = max(1, int(attempts))
    delay = max(0.0, float(delay_s))
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as ex:
            if attempt >= total:
                raise
            if on_retry is not None:
                on_retry(attempt, delay, ex)
            (sleep or time.sleep)(delay)
            attempt += 1
