"""Randomized exponential backoff used between retried requests."""

from __future__ import annotations

import asyncio
import random

DEFAULT_MIN_DELAY = 0.05
DEFAULT_MAX_DELAY = 10.0
DEFAULT_RANDOM_FACTOR = 0.2

_NS_PER_SECOND = 1_000_000_000
_NS_PER_MS = 1_000_000


class RandomizedExponentialBackoff:
    """Delay generator that grows by half each step, up to a ceiling, with jitter.

    Delays are given and returned in seconds; jitter is applied at millisecond
    resolution.
    """

    def __init__(
        self,
        min_delay: float = DEFAULT_MIN_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        random_factor: float = DEFAULT_RANDOM_FACTOR,
    ) -> None:
        if min_delay < 0 or max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0.0 <= random_factor <= 1.0:
            raise ValueError("random_factor must be between 0 and 1")
        self._delay_ns = round(min_delay * _NS_PER_SECOND)
        self._max_delay_ns = round(max_delay * _NS_PER_SECOND)
        self.random_factor = random_factor

    @property
    def current_delay(self) -> float:
        """The base delay (without jitter) that the next step will use, in seconds."""
        return self._delay_ns / _NS_PER_SECOND

    def next_delay(self) -> float:
        """Return the next delay in seconds and advance the schedule."""
        delay_ms = self._delay_ns // _NS_PER_MS
        spread = int(delay_ms * self.random_factor)
        jittered_ms = delay_ms + random.randint(-spread, spread)

        self._delay_ns = min(self._delay_ns * 3 // 2, self._max_delay_ns)
        return jittered_ms / 1000

    async def wait(self) -> None:
        """Sleep for the next delay."""
        await asyncio.sleep(self.next_delay())