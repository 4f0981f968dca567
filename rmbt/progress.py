"""
Live progress state shared between workers and the status reporter.

All writers run on the event loop thread, so each individual field update is
atomic.  A reader may see ``trans`` from one update and ``time_ns`` from the
next; both values are valid on their own and that is good enough for a
progress display.
"""
from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TestStatus(enum.Enum):
    __test__ = False  # keep pytest from collecting this as a test class

    WAIT = "wait"
    CONNECT = "connect"
    PRETEST_DOWN = "pretest_down"
    PING = "ping"
    DOWN = "down"
    INIT_UP = "init_up"
    UP = "up"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


class CurrentSpeed:
    """Bytes transferred and elapsed time of one worker's active phase."""

    __slots__ = ("trans", "time_ns")

    def __init__(self) -> None:
        self.trans = 0
        self.time_ns = 0

    def update(self, trans: int, time_ns: int) -> None:
        self.trans = trans
        self.time_ns = time_ns

    def reset(self) -> None:
        self.update(0, 0)

    @property
    def speed_bps(self) -> float:
        if self.time_ns <= 0:
            return 0.0
        return self.trans * 8 / (self.time_ns / 1e9)


class SharedState:
    """Phase indicator and the once-only fallback flag for one run."""

    def __init__(self, on_status: Optional[Callable[[TestStatus], None]] = None) -> None:
        self.status = TestStatus.WAIT
        self.on_status = on_status
        self._fallback = False

    @property
    def fallback(self) -> bool:
        return self._fallback

    def set_fallback(self) -> None:
        if not self._fallback:
            logger.info("connection too slow for parallel workers, falling back to one thread")
            self._fallback = True

    def set_status(self, status: TestStatus) -> None:
        if status is self.status:
            return
        self.status = status
        logger.debug("status: %s", status.value)
        if self.on_status:
            self.on_status(status)
