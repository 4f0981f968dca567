"""
Result containers for one worker and for the whole run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .stats import LatencyStats, SpeedStats, calculate_speed


# ---------------------------------------------------------------------------
# Ping
# ---------------------------------------------------------------------------

@dataclass
class PingResult:
    """A single PING/PONG round-trip.  ``-1`` marks an unusable value."""

    client_ns: int = -1
    server_ns: int = -1
    success: bool = True
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, client_ns: int = -1) -> PingResult:
        return cls(client_ns=client_ns, success=False, error=error)


# ---------------------------------------------------------------------------
# Per worker
# ---------------------------------------------------------------------------

@dataclass
class ThreadTestResult:
    """Everything one worker measured on its connection."""

    thread_id: int = 0
    pings: List[int] = field(default_factory=list)
    pings_server: List[int] = field(default_factory=list)
    ping_shortest: Optional[int] = None

    down_bytes: List[int] = field(default_factory=list)
    down_nsec: List[int] = field(default_factory=list)
    up_bytes: List[int] = field(default_factory=list)
    up_nsec: List[int] = field(default_factory=list)

    total_down_bytes: int = 0
    total_up_bytes: int = 0

    ip_local: Optional[str] = None
    ip_server: Optional[str] = None
    port_remote: Optional[int] = None
    encryption: Optional[str] = None
    reconnects: int = 0
    upload_outcome: Optional[str] = None

    def add_ping(self, ping: PingResult) -> None:
        self.pings.append(ping.client_ns)
        self.pings_server.append(ping.server_ns)
        if ping.success and ping.client_ns >= 0:
            if self.ping_shortest is None or ping.client_ns < self.ping_shortest:
                self.ping_shortest = ping.client_ns

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "pings": self.pings,
            "pings_server": self.pings_server,
            "ping_shortest": self.ping_shortest,
            "down": {"bytes": self.down_bytes, "nsec": self.down_nsec},
            "up": {"bytes": self.up_bytes, "nsec": self.up_nsec},
            "total_down_bytes": self.total_down_bytes,
            "total_up_bytes": self.total_up_bytes,
            "ip_local": self.ip_local,
            "ip_server": self.ip_server,
            "port_remote": self.port_remote,
            "encryption": self.encryption,
            "reconnects": self.reconnects,
            "upload_outcome": self.upload_outcome,
        }


# ---------------------------------------------------------------------------
# Whole run
# ---------------------------------------------------------------------------

@dataclass
class TotalTestResult:
    """Merged result of all workers."""

    threads: List[ThreadTestResult] = field(default_factory=list)
    fallback: bool = False
    ping: LatencyStats = field(default_factory=LatencyStats)
    ping_shortest_ns: Optional[int] = None
    download: SpeedStats = field(default_factory=SpeedStats)
    upload: SpeedStats = field(default_factory=SpeedStats)
    total_down_bytes: int = 0
    total_up_bytes: int = 0

    @classmethod
    def merge(cls, threads: Sequence[ThreadTestResult], fallback: bool = False) -> TotalTestResult:
        total = cls(threads=list(threads), fallback=fallback)

        pingers = [t for t in threads if t.pings]
        if pingers:
            total.ping = LatencyStats.from_nsec(pingers[0].pings)
            total.ping_shortest_ns = pingers[0].ping_shortest

        total.download = calculate_speed([(t.down_bytes, t.down_nsec) for t in threads])
        total.upload = calculate_speed([(t.up_bytes, t.up_nsec) for t in threads])
        total.total_down_bytes = sum(t.total_down_bytes for t in threads)
        total.total_up_bytes = sum(t.total_up_bytes for t in threads)
        return total

    @property
    def ping_ms(self) -> float:
        return self.ping_shortest_ns / 1e6 if self.ping_shortest_ns is not None else 0.0

    def to_dict(self) -> dict:
        return {
            "fallback": self.fallback,
            "ping_ms": round(self.ping_ms, 3),
            "ping": self.ping.to_dict(),
            "download": self.download.to_dict(),
            "upload": self.upload.to_dict(),
            "total_down_bytes": self.total_down_bytes,
            "total_up_bytes": self.total_up_bytes,
            "threads": [t.to_dict() for t in self.threads],
        }
