"""
Upload acknowledgement watcher.

While the upload loop is busy writing chunks, the server reports how much it
has received on the same connection::

    TIME <nsec> BYTES <bytes>     progress
    TIME <nsec>                   final summary, no byte count

The watcher runs as its own task, turns every progress line into a sample
and stops according to a termination policy that the upload loop escalates
once it has finished writing:

    RUN             keep reading
    WHEN_CAUGHT_UP  stop after a line whose time is past the threshold
    IMMEDIATELY     stop after the next progress line

If the watcher still has not stopped after both bounded waits, it is
cancelled.  Samples recorded up to that point are kept.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import Optional

from .errors import ProtocolError
from .progress import CurrentSpeed
from .ringbuffer import ResultRingBuffer
from .transport import CountingStream

logger = logging.getLogger(__name__)

_PATTERN_FULL = re.compile(r"TIME (\d+) BYTES (\d+)")
_PATTERN_TIME = re.compile(r"TIME (\d+)")


class TerminationPolicy(enum.Enum):
    RUN = "run"
    WHEN_CAUGHT_UP = "when_caught_up"
    IMMEDIATELY = "immediately"


class UploadOutcome(enum.Enum):
    CAUGHT_UP = "caught_up"          # graceful stop
    FORCED = "forced"                # stopped on the first line after escalation
    NO_BYTE_COUNT = "no_byte_count"  # server sent its summary line
    CANCELLED = "cancelled"          # never stopped, task cancelled
    FAILED = "failed"                # unparsable acknowledgement


class UploadWatcher:
    """Consumes upload acknowledgements for one session."""

    def __init__(
        self,
        stream: CountingStream,
        result: ResultRingBuffer,
        progress: CurrentSpeed,
        enough_time_ns: int,
        thread_id: int = 0,
    ) -> None:
        self.stream = stream
        self.result = result
        self.progress = progress
        self.enough_time_ns = enough_time_ns
        self.thread_id = thread_id
        self.policy = TerminationPolicy.RUN
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._watch(), name=f"rmbt-upload-watcher-{self.thread_id}"
        )

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def _watch(self) -> UploadOutcome:
        while True:
            line = await self.stream.readline()

            match = _PATTERN_FULL.fullmatch(line)
            if match is None:
                if _PATTERN_TIME.fullmatch(line) is None:
                    raise ProtocolError(f"unexpected upload reply {line!r}")
                return UploadOutcome.NO_BYTE_COUNT

            last_nsec = int(match.group(1))
            nbytes = int(match.group(2))
            self.result.add(nbytes, last_nsec)
            self.progress.update(nbytes, last_nsec)

            if self.policy is TerminationPolicy.IMMEDIATELY:
                return UploadOutcome.FORCED
            if self.policy is TerminationPolicy.WHEN_CAUGHT_UP and last_nsec > self.enough_time_ns:
                return UploadOutcome.CAUGHT_UP

    async def _wait(self, timeout: float) -> Optional[UploadOutcome]:
        try:
            return await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def finish(self, timeout: float, forced_timeout: float) -> UploadOutcome:
        """Escalate termination until the watcher stops; never raises on timeout."""
        if self._task is None:
            raise RuntimeError("watcher was never started")

        try:
            self.policy = TerminationPolicy.WHEN_CAUGHT_UP
            outcome = await self._wait(timeout)
            if outcome is not None:
                return outcome

            logger.warning("thread %d: upload watcher still running, forcing stop", self.thread_id)
            self.policy = TerminationPolicy.IMMEDIATELY
            outcome = await self._wait(forced_timeout)
            if outcome is not None:
                return outcome
        except ProtocolError as exc:
            logger.warning("thread %d: upload watcher failed: %s", self.thread_id, exc)
            return UploadOutcome.FAILED

        logger.warning("thread %d: upload watcher did not stop, cancelling", self.thread_id)
        await self.cancel()
        return UploadOutcome.CANCELLED

    async def cancel(self) -> None:
        if self._task is None:
            return
        if self._task.done():
            if not self._task.cancelled():
                self._task.exception()  # mark retrieved so asyncio does not warn
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
