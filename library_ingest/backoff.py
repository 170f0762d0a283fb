"""Exponential backoff with jitter and an elapsed-time ceiling.

A fresh :class:`ExponentialBackoff` is created per bulk batch. Each call to
:meth:`ExponentialBackoff.next_backoff` yields the delay before the next
attempt, or ``None`` once the batch has used up its elapsed-time budget.
"""

import random
import time
from typing import Callable, Optional

from library_ingest.config import Settings


class ExponentialBackoff:
    def __init__(
        self,
        initial_interval: float,
        multiplier: float,
        randomization_factor: float,
        max_interval: float,
        max_elapsed_time: Optional[float],
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.randomization_factor = randomization_factor
        self.max_interval = max_interval
        self.max_elapsed_time = max_elapsed_time
        self._clock = clock
        self._rng = rng
        self.current_interval = initial_interval
        self.start_time = clock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> "ExponentialBackoff":
        return cls(
            initial_interval=settings.retry_initial_sec,
            multiplier=settings.retry_multiplier,
            randomization_factor=settings.retry_randomization,
            max_interval=settings.retry_max_interval_sec,
            max_elapsed_time=settings.retry_max_elapsed_sec,
            clock=clock,
            rng=rng,
        )

    def reset(self) -> None:
        self.current_interval = self.initial_interval
        self.start_time = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self.start_time

    def next_backoff(self) -> Optional[float]:
        elapsed = self.elapsed()
        if self.max_elapsed_time is not None and elapsed > self.max_elapsed_time:
            return None

        delta = self.randomization_factor * self.current_interval
        low = self.current_interval - delta
        high = self.current_interval + delta
        delay = min(low + self._rng() * (high - low), self.max_interval)
        self._increment()

        if self.max_elapsed_time is not None and elapsed + delay > self.max_elapsed_time:
            return None
        return delay

    def _increment(self) -> None:
        if self.current_interval >= self.max_interval / self.multiplier:
            self.current_interval = self.max_interval
        else:
            self.current_interval *= self.multiplier
