from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, TypeVar

T = TypeVar("T")

_LOGGER = logging.getLogger("knx_bridge.backoff")


def backoff_delays(base_delay_s: float, max_delay_s: float) -> Iterator[float]:
    delay = max(0.0, float(base_delay_s))
    cap = max(delay, float(max_delay_s))
    while True:
        yield delay
        delay = min(cap, delay * 2 if delay > 0 else cap)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    base_delay_s: float,
    max_delay_s: float,
    what: str = "operation",
    max_attempts: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    delays = backoff_delays(base_delay_s, max_delay_s)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if max_attempts is not None and attempt >= max_attempts:
                raise
            delay = next(delays)
            _LOGGER.warning("%s failed (attempt %d): %s; retrying in %.1fs", what, attempt, e, delay)
            await sleep(delay)
