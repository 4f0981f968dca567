"""
One measurement connection speaking the RMBT line protocol.

Protocol flow::

    1. Receive  <version greeting>
    2. Receive  ACCEPT ...
    3. Send     TOKEN <token>
    4. Receive  OK
    5. Receive  CHUNKSIZE <n> [...]
    6. Per command: receive ACCEPT ..., then one of
         GETCHUNKS <n>   n chunks down, OK, TIME line
         GETTIME <s>     stream down for s seconds, OK, TIME line
         PUTNORESULT     OK, n chunks up, TIME line
         PUT             OK, stream up, TIME ... BYTES ... lines
         PING            PONG, OK, TIME line

Payload travels in chunks of ``chunksize`` bytes.  Only the last byte of a
chunk means anything: ``0x00`` -- more follow, ``0xFF`` -- end of burst.
"""
from __future__ import annotations

import asyncio
import logging
import re
import ssl
import time
from typing import Awaitable, Callable, Optional, Tuple

from .constants import (
    CHUNK_CONTINUE,
    CHUNK_TERMINATE,
    DOWNLOAD_GRACE_SECONDS,
    EXPECT_GREETING,
    FALLBACK_CHUNK_THRESHOLD,
    NSECS,
    UPLOAD_FORCED_WAIT,
    UPLOAD_MAX_DISCARD_TIME,
    UPLOAD_MAX_WAIT,
    UPLOAD_SETTLE_DELAY,
    YIELD_CHECK_INTERVAL,
)
from .errors import ConnectionLostError, ProtocolError
from .params import TestParameters
from .progress import CurrentSpeed
from .results import PingResult
from .ringbuffer import ResultRingBuffer
from .transport import CountingStream
from .watcher import UploadOutcome, UploadWatcher

logger = logging.getLogger(__name__)

_PATTERN_TIME = re.compile(r"TIME (\d+)")

Clock = Callable[[], int]


# ---------------------------------------------------------------------------
# Framing and calibration helpers
# ---------------------------------------------------------------------------

def find_terminator(data: bytes, offset: int, chunksize: int) -> bool:
    """
    Return ``True`` if a chunk that ends inside *data* is a terminating chunk.

    *offset* is the number of payload bytes received before *data*, which
    tells where the chunk boundaries fall inside this buffer.
    """
    pos = chunksize - 1 - (offset % chunksize)
    while pos < len(data):
        if data[pos] == CHUNK_TERMINATE:
            return True
        pos += chunksize
    return False


def needs_fallback(chunks: int, threshold: int = FALLBACK_CHUNK_THRESHOLD) -> bool:
    """A calibration that never got past *threshold* chunks means a slow link."""
    return chunks <= threshold


async def run_calibration(
    burst: Callable[[int], Awaitable[None]],
    duration: float,
    clock: Clock = time.monotonic_ns,
) -> int:
    """
    Run bursts of 1, 2, 4, ... chunks until *duration* seconds have passed.

    Returns the chunk counter after the last doubling, i.e. twice the size
    of the last burst.
    """
    target_end = clock() + int(duration * NSECS)
    chunks = 1
    while True:
        await burst(chunks)
        chunks *= 2
        if clock() >= target_end:
            return chunks


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class RMBTSession:
    """
    Protocol state for one worker connection.

    The session owns its stream, the negotiated chunk size and a send buffer
    of exactly that size.  Byte totals survive :meth:`reconnect`, so
    :meth:`totals` covers the whole lifetime of the worker.
    """

    def __init__(
        self,
        params: TestParameters,
        thread_id: int = 0,
        ssl_context: Optional[ssl.SSLContext] = None,
        expect_greeting: str = EXPECT_GREETING,
        download_grace: float = DOWNLOAD_GRACE_SECONDS,
        upload_settle_delay: float = UPLOAD_SETTLE_DELAY,
        upload_max_wait: float = UPLOAD_MAX_WAIT,
        upload_forced_wait: float = UPLOAD_FORCED_WAIT,
        clock: Clock = time.monotonic_ns,
    ) -> None:
        self.params = params
        self.thread_id = thread_id
        self.ssl_context = ssl_context
        self.expect_greeting = expect_greeting
        self.download_grace = download_grace
        self.upload_settle_delay = upload_settle_delay
        self.upload_max_wait = upload_max_wait
        self.upload_forced_wait = upload_forced_wait
        self.clock = clock

        self.stream: Optional[CountingStream] = None
        self.chunksize = 0
        self.buf = bytearray()
        self.progress = CurrentSpeed()

        self._total_down = 0
        self._total_up = 0

    # -- Connection lifecycle -----------------------------------------------

    async def connect(self) -> None:
        """Open the connection and run the handshake."""
        if self.stream is not None:
            await self.close()

        logger.info("thread %d: connecting to %s:%d...", self.thread_id, self.params.host, self.params.port)
        self.stream = await CountingStream.open(self.params.host, self.params.port, self.ssl_context)
        await self._handshake()

    async def reconnect(self) -> None:
        await self.close()
        await self.connect()
        logger.info("thread %d: reconnected", self.thread_id)

    async def close(self) -> None:
        if self.stream is None:
            return
        stream, self.stream = self.stream, None
        self._total_down += stream.bytes_read
        self._total_up += stream.bytes_written
        await stream.close()

    def totals(self) -> Tuple[int, int]:
        """``(bytes received, bytes sent)`` over every connection so far."""
        down, up = self._total_down, self._total_up
        if self.stream is not None:
            down += self.stream.bytes_read
            up += self.stream.bytes_written
        return down, up

    async def _handshake(self) -> None:
        line = await self._readline()
        if line != self.expect_greeting:
            raise ProtocolError(f"got {line!r} expected {self.expect_greeting!r}")

        await self._expect_accept()
        await self._send(f"TOKEN {self.params.token}")

        line = await self._readline()
        if line != "OK":
            raise ProtocolError(f"got {line!r} expected 'OK'")

        line = await self._readline()
        parts = line.split()
        if len(parts) < 2 or parts[0] != "CHUNKSIZE":
            raise ProtocolError(f"got {line!r} expected 'CHUNKSIZE'")
        try:
            chunksize = int(parts[1])
        except ValueError:
            raise ProtocolError(f"invalid CHUNKSIZE: {line!r}") from None
        if chunksize < 1:
            raise ProtocolError(f"invalid CHUNKSIZE: {line!r}")

        self.chunksize = chunksize
        if len(self.buf) != chunksize:
            self.buf = bytearray(chunksize)
        logger.debug("thread %d: CHUNKSIZE is %d", self.thread_id, chunksize)

    # -- Line helpers -------------------------------------------------------

    def _stream(self) -> CountingStream:
        if self.stream is None:
            raise RuntimeError("session is not connected")
        return self.stream

    async def _readline(self) -> str:
        return await self._stream().readline()

    async def _send(self, line: str) -> None:
        await self._stream().write_line(line)

    async def _expect_accept(self) -> None:
        line = await self._readline()
        if not line.startswith("ACCEPT "):
            raise ProtocolError(f"got {line!r} expected 'ACCEPT'")

    async def _read_time(self) -> int:
        line = await self._readline()
        match = _PATTERN_TIME.search(line)
        if match is None:
            raise ProtocolError(f"got {line!r} expected 'TIME'")
        return int(match.group(1))

    def _chunk(self, terminate: bool) -> bytes:
        self.buf[-1] = CHUNK_TERMINATE if terminate else CHUNK_CONTINUE
        return bytes(self.buf)

    # -- Calibration bursts -------------------------------------------------

    async def download_chunks(self, chunks: int) -> None:
        if chunks < 1:
            raise ValueError("chunks must be at least 1")
        logger.debug("thread %d: getting %d chunk(s)", self.thread_id, chunks)

        stream = self._stream()
        await self._expect_accept()
        await self._send(f"GETCHUNKS {chunks}")

        total = 0
        terminated = False
        while not terminated:
            data = await stream.read(self.chunksize)
            if not data:
                raise ConnectionLostError("connection lost during chunk download")
            terminated = find_terminator(data, total, self.chunksize)
            total += len(data)

        await self._send("OK")
        await self._read_time()

    async def upload_chunks(self, chunks: int) -> None:
        if chunks < 1:
            raise ValueError("chunks must be at least 1")
        logger.debug("thread %d: putting %d chunk(s)", self.thread_id, chunks)

        stream = self._stream()
        await self._expect_accept()
        await self._send("PUTNORESULT")
        line = await self._readline()
        if line != "OK":
            raise ProtocolError(f"got {line!r} expected 'OK'")

        for i in range(chunks):
            stream.write(self._chunk(terminate=i == chunks - 1))
            await stream.drain()

        await self._read_time()

    async def pretest_download(self, duration: float) -> int:
        chunks = await run_calibration(self.download_chunks, duration, self.clock)
        logger.info("thread %d: download calibration reached %d chunks", self.thread_id, chunks)
        return chunks

    async def pretest_upload(self, duration: float) -> int:
        chunks = await run_calibration(self.upload_chunks, duration, self.clock)
        logger.info("thread %d: upload calibration reached %d chunks", self.thread_id, chunks)
        return chunks

    # -- Ping ---------------------------------------------------------------

    async def ping(self) -> PingResult:
        logger.debug("thread %d: ping test", self.thread_id)

        line = await self._readline()
        if not line.startswith("ACCEPT "):
            logger.warning("thread %d: got %r expected 'ACCEPT'", self.thread_id, line)
            return PingResult.failed(f"got {line!r} expected 'ACCEPT'")

        time_start = self.clock()
        await self._send("PING")
        line = await self._readline()
        time_end = self.clock()
        await self._send("OK")

        if line != "PONG":
            # the server still answers our OK with its TIME line
            await self._readline()
            logger.warning("thread %d: got %r expected 'PONG'", self.thread_id, line)
            return PingResult.failed(f"got {line!r} expected 'PONG'")

        line = await self._readline()
        match = _PATTERN_TIME.search(line)
        if match is None:
            return PingResult.failed(f"got {line!r} expected 'TIME'")

        ping = PingResult(client_ns=time_end - time_start, server_ns=int(match.group(1)))
        logger.debug("thread %d - client: %.3f ms ping", self.thread_id, ping.client_ns / 1e6)
        logger.debug("thread %d - server: %.3f ms ping", self.thread_id, ping.server_ns / 1e6)
        return ping

    # -- Timed download -----------------------------------------------------

    async def download(self, seconds: int, result: ResultRingBuffer) -> bool:
        """
        Stream from the server for *seconds*.

        Returns ``True`` if the connection must be re-established before it
        can be used again, which is the case when the download was cut off by
        time instead of ending with a terminating chunk.
        """
        if seconds < 1:
            raise ValueError("duration must be at least one second")
        logger.info("thread %d: download test %d seconds", self.thread_id, seconds)

        stream = self._stream()
        await self._expect_accept()

        time_start = self.clock()
        time_latest_end = time_start + int((seconds + self.download_grace) * NSECS)
        await self._send(f"GETTIME {seconds}")

        total = 0
        terminated = False
        while not terminated:
            remaining = time_latest_end - self.clock()
            if remaining < 0:
                break
            try:
                data = await asyncio.wait_for(stream.read(self.chunksize), timeout=remaining / NSECS)
            except asyncio.TimeoutError:
                continue
            if not data:
                raise ConnectionLostError("connection lost during download")

            terminated = find_terminator(data, total, self.chunksize)
            total += len(data)

            nsec = self.clock() - time_start
            result.add(total, nsec)
            self.progress.update(total, nsec)

        time_end = self.clock()
        await self._send("OK")

        nsec = time_end - time_start
        result.add(total, nsec)
        self.progress.update(total, nsec)

        if not terminated:
            logger.warning("thread %d: download cut off after %.3f s", self.thread_id, nsec / NSECS)
            return True

        await self._read_time()
        return False

    # -- Timed upload -------------------------------------------------------

    async def upload(self, seconds: int, result: ResultRingBuffer) -> UploadOutcome:
        """Stream to the server for *seconds* while a watcher collects acks."""
        if seconds < 1:
            raise ValueError("duration must be at least one second")
        logger.info("thread %d: upload test %d seconds", self.thread_id, seconds)

        enough_time = max(0, seconds * NSECS - UPLOAD_MAX_DISCARD_TIME)

        stream = self._stream()
        await self._expect_accept()
        await self._send("PUT")
        line = await self._readline()
        if line != "OK":
            raise ProtocolError(f"got {line!r} expected 'OK'")

        watcher = UploadWatcher(stream, result, self.progress, enough_time, self.thread_id)
        watcher.start()
        try:
            max_nsec = seconds * NSECS
            chunk = self._chunk(terminate=False)
            since_yield = 0
            end = False
            time_start = self.clock()
            while not end:
                if self.clock() - time_start > max_nsec:
                    chunk = self._chunk(terminate=True)
                    end = True
                stream.write(chunk)

                since_yield += len(chunk)
                if since_yield >= YIELD_CHECK_INTERVAL:
                    since_yield = 0
                    await stream.drain()
                    await asyncio.sleep(0)

            await stream.drain()
            await asyncio.sleep(self.upload_settle_delay)

            outcome = await watcher.finish(self.upload_max_wait, self.upload_forced_wait)
            logger.info("thread %d: upload finished (%s)", self.thread_id, outcome.value)
            return outcome
        finally:
            await watcher.cancel()
