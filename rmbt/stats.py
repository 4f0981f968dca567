"""
Measurement statistics.

Pure functions and lightweight dataclasses -- no I/O, no side effects.
Everything here is deterministic and easy to unit-test.
"""
from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from .constants import NSECS


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LatencyStats:
    """Ping statistics in milliseconds, computed from valid samples only."""

    samples: List[float] = field(default_factory=list)
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    jitter: float = 0.0
    count: int = 0

    @classmethod
    def from_nsec(cls, pings_ns: Sequence[int]) -> LatencyStats:
        stats = cls(samples=[p / 1e6 for p in pings_ns if p >= 0])
        stats.calculate()
        return stats

    def calculate(self) -> None:
        if not self.samples:
            return
        self.count = len(self.samples)
        self.min = min(self.samples)
        self.max = max(self.samples)
        self.mean = statistics.mean(self.samples)
        self.median = statistics.median(self.samples)
        self.jitter = calculate_jitter(self.samples)

    def to_dict(self) -> dict:
        return {
            "samples": [round(s, 3) for s in self.samples],
            "min": round(self.min, 3),
            "max": round(self.max, 3),
            "mean": round(self.mean, 3),
            "median": round(self.median, 3),
            "jitter": round(self.jitter, 3),
            "count": self.count,
        }


@dataclass
class SpeedStats:
    """Aggregated speed over all workers for one direction."""

    bytes_transferred: int = 0
    duration_ns: int = 0
    speed_bps: float = 0.0
    speed_mbps: float = 0.0

    def calculate(self) -> None:
        if self.duration_ns > 0:
            self.speed_bps = self.bytes_transferred * 8 / (self.duration_ns / NSECS)
            self.speed_mbps = self.speed_bps / 1_000_000

    @property
    def duration_ms(self) -> float:
        return self.duration_ns / 1e6

    def to_dict(self) -> dict:
        return {
            "bytes": self.bytes_transferred,
            "duration_ms": round(self.duration_ms, 2),
            "speed_bps": round(self.speed_bps, 2),
            "speed_mbps": round(self.speed_mbps, 2),
        }


# ---------------------------------------------------------------------------
# Pure helper functions
# ---------------------------------------------------------------------------

def calculate_jitter(samples: List[float]) -> float:
    """Mean absolute difference between consecutive samples."""
    if len(samples) < 2:
        return 0.0
    diffs = [abs(samples[i] - samples[i - 1]) for i in range(1, len(samples))]
    return statistics.mean(diffs)


def bytes_at(all_bytes: Sequence[int], all_nsec: Sequence[int], target_ns: int) -> float:
    """
    Cumulative bytes a worker had transferred at *target_ns*.

    Linear interpolation between the two retained samples around the target;
    before the first sample the rate of the first sample is assumed.
    """
    if not all_bytes:
        return 0.0
    for i, nsec in enumerate(all_nsec):
        if nsec >= target_ns:
            if i == 0:
                return all_bytes[0] * target_ns / nsec if nsec > 0 else float(all_bytes[0])
            prev_b, prev_t = all_bytes[i - 1], all_nsec[i - 1]
            span = nsec - prev_t
            if span <= 0:
                return float(all_bytes[i])
            return prev_b + (all_bytes[i] - prev_b) * (target_ns - prev_t) / span
    return float(all_bytes[-1])


def calculate_speed(threads: Sequence[Tuple[Sequence[int], Sequence[int]]]) -> SpeedStats:
    """
    Merge per-worker ``(all_bytes, all_nsec)`` series into one speed.

    All workers are evaluated at the same instant -- the earliest final
    sample among them -- so a worker that happened to run longer does not
    inflate the total.
    """
    usable = [(b, t) for b, t in threads if b and t and t[-1] > 0]
    result = SpeedStats()
    if not usable:
        return result

    target = min(t[-1] for _, t in usable)
    result.duration_ns = target
    result.bytes_transferred = int(round(sum(bytes_at(b, t, target) for b, t in usable)))
    result.calculate()
    return result


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_speed(speed_mbps: float) -> str:
    """Human-readable speed string."""
    if speed_mbps >= 1000:
        return f"{speed_mbps / 1000:.2f} Gbps"
    return f"{speed_mbps:.2f} Mbps"


def format_latency(latency_ms: float) -> str:
    """Human-readable latency string."""
    if latency_ms >= 1000:
        return f"{latency_ms / 1000:.2f} s"
    return f"{latency_ms:.1f} ms"
