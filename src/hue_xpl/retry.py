from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar


logger = logging.getLogger("hue_xpl.retry")

T = TypeVar("T")


class RetriesExhaustedError(Exception):
    def __init__(self, *, failures: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {failures} consecutive failures: {last_error}")
        self.failures = failures
        self.last_error = last_error


class FailureCounter:
    """Consecutive failures; exhausted once the count exceeds the ceiling."""

    def __init__(self, ceiling: int) -> None:
        self.ceiling = ceiling
        self.count = 0

    def record_failure(self) -> bool:
        self.count += 1
        return self.count > self.ceiling

    def reset(self) -> None:
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count > self.ceiling


def _always(_: BaseException) -> bool:
    return True


async def attempt(
    op: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    delay: float,
    retryable: Callable[[BaseException], bool] = _always,
    counter: FailureCounter | None = None,
    label: str = "operation",
) -> T:
    """
    Run `op` until it succeeds, retrying retryable errors after `delay` seconds.

    With a fresh counter `op` runs at most `1 + max_retries` times. A shared
    `counter` carries consecutive failures across calls and is reset on success.
    """
    if counter is None:
        counter = FailureCounter(max_retries)

    while True:
        try:
            result = await op()
        except Exception as exc:
            if not retryable(exc):
                raise
            if counter.record_failure():
                raise RetriesExhaustedError(failures=counter.count, last_error=exc) from exc
            logger.warning("%s failed (%s/%s): %s", label, counter.count, counter.ceiling, exc)
            await asyncio.sleep(delay)
            continue
        counter.reset()
        return result
