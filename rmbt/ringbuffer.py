"""
Bounded, de-duplicating store of throughput samples.

A sample is a ``(cumulative_bytes, elapsed_nsec)`` pair.  Samples that arrive
within ``min_diff_time`` of the newest retained sample overwrite it in place;
anything later opens a new slot.  Slots wrap around once ``capacity`` is
reached, so the buffer always holds the most recent ``capacity`` samples.
"""
from __future__ import annotations

from typing import List, Tuple

from .constants import DEFAULT_MIN_DIFF_TIME, DEFAULT_STORE_RESULTS, NSECS


class ResultRingBuffer:

    def __init__(
        self,
        capacity: int = DEFAULT_STORE_RESULTS,
        min_diff_time: int = DEFAULT_MIN_DIFF_TIME,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.min_diff_time = min_diff_time
        self._bytes = [0] * capacity
        self._nsec = [0] * capacity
        self._results = 0  # number of slots ever opened

    def add(self, new_bytes: int, new_nsec: int) -> None:
        increment = self._results == 0
        if not increment and new_nsec - self.nsec > self.min_diff_time:
            increment = True

        if increment:
            pos = self._results
            self._results += 1
        else:
            pos = self._results - 1

        pos %= self.capacity
        self._bytes[pos] = new_bytes
        self._nsec[pos] = new_nsec

    # -- Newest sample ------------------------------------------------------

    @property
    def bytes(self) -> int:
        if self._results == 0:
            return 0
        return self._bytes[(self._results - 1) % self.capacity]

    @property
    def nsec(self) -> int:
        if self._results == 0:
            return 0
        return self._nsec[(self._results - 1) % self.capacity]

    @property
    def speed_bps(self) -> float:
        """Bits per second over the newest sample, 0 when empty."""
        if self.nsec <= 0:
            return 0.0
        return self.bytes / self.nsec * NSECS * 8.0

    # -- Snapshots (oldest -> newest) ----------------------------------------

    def __len__(self) -> int:
        return min(self._results, self.capacity)

    def _ordered(self, values: List[int]) -> List[int]:
        count = len(self)
        offset = self._results - count
        return [values[(offset + i) % self.capacity] for i in range(count)]

    def all_bytes(self) -> List[int]:
        return self._ordered(self._bytes)

    def all_nsec(self) -> List[int]:
        return self._ordered(self._nsec)

    def samples(self) -> List[Tuple[int, int]]:
        return list(zip(self.all_bytes(), self.all_nsec()))
