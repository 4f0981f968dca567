"""
Multi-connection test orchestration.

Every worker owns one :class:`RMBTSession` and walks through the same phases::

    CONNECT -> PRETEST_DOWN -> (barrier) -> fallback decision
            -> (barrier) PING -> (barrier) DOWN -> (barrier) INIT_UP
            -> (barrier) UP -> DONE

The barriers keep all connections in the same phase at the same time so the
per-connection throughput samples can be summed.  If the download calibration
of worker 0 shows a slow link, only worker 0 continues past the fallback
decision and the remaining barriers are skipped.

A worker that fails breaks the barrier, which releases every sibling with
``BrokenBarrierError``; the orchestrator then cancels whatever is still
running and raises :class:`TestAbortedError`.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Callable, Dict, List, Optional

from .constants import DEFAULT_MIN_DIFF_TIME, DEFAULT_STORE_RESULTS, FALLBACK_CHUNK_THRESHOLD, PING_COUNT
from .errors import TestAbortedError
from .params import TestParameters
from .progress import SharedState, TestStatus
from .results import ThreadTestResult, TotalTestResult
from .ringbuffer import ResultRingBuffer
from .session import RMBTSession, needs_fallback

logger = logging.getLogger(__name__)

AbortCallback = Callable[[BaseException], None]


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class TestWorker:
    """Runs the full phase sequence on one connection."""

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(
        self,
        thread_id: int,
        params: TestParameters,
        session: RMBTSession,
        barrier: asyncio.Barrier,
        state: SharedState,
        store_results: int = DEFAULT_STORE_RESULTS,
        min_diff_time: int = DEFAULT_MIN_DIFF_TIME,
        fallback_threshold: int = FALLBACK_CHUNK_THRESHOLD,
        on_abort: Optional[AbortCallback] = None,
    ) -> None:
        self.thread_id = thread_id
        self.params = params
        self.session = session
        self.barrier = barrier
        self.state = state
        self.store_results = store_results
        self.min_diff_time = min_diff_time
        self.fallback_threshold = fallback_threshold
        self.on_abort = on_abort
        self.result = ThreadTestResult(thread_id=thread_id)

    def _set_status(self, status: TestStatus) -> None:
        if self.thread_id == 0:
            self.state.set_status(status)

    def _new_buffer(self) -> ResultRingBuffer:
        return ResultRingBuffer(self.store_results, self.min_diff_time)

    def _record_connection(self) -> None:
        stream = self.session.stream
        if stream is None:
            return
        local, remote = stream.local_address, stream.remote_address
        self.result.ip_local = local[0] if local else None
        self.result.ip_server = remote[0] if remote else None
        self.result.port_remote = remote[1] if remote else None
        self.result.encryption = stream.encryption

    async def run(self) -> Optional[ThreadTestResult]:
        """
        Execute all phases.

        Returns the worker's result, or ``None`` if a sibling broke the
        barrier.  Any other failure breaks the barrier itself and is re-raised.
        """
        tid = self.thread_id
        session = self.session
        result = self.result
        duration = self.params.duration
        logger.info("thread %d: started.", tid)

        try:
            self._set_status(TestStatus.CONNECT)
            await session.connect()
            self._record_connection()

            # -- Download calibration ---------------------------------------
            self._set_status(TestStatus.PRETEST_DOWN)
            chunks = await session.pretest_download(self.params.pretest_duration)
            if tid == 0 and needs_fallback(chunks, self.fallback_threshold):
                self.state.set_fallback()

            await self.barrier.wait()
            fallback = self.state.fallback
            if fallback and tid != 0:
                logger.info("thread %d: not needed in single-thread mode", tid)
                return result

            # -- Ping -------------------------------------------------------
            self._set_status(TestStatus.PING)
            if not fallback:
                await self.barrier.wait()
            if tid == 0:
                for _ in range(PING_COUNT):
                    result.add_ping(await session.ping())

            # -- Download ---------------------------------------------------
            self._set_status(TestStatus.DOWN)
            if not fallback:
                await self.barrier.wait()
            session.progress.reset()
            down = self._new_buffer()
            if await session.download(duration, down):
                await session.reconnect()
                result.reconnects += 1
                self._record_connection()
            result.down_bytes = down.all_bytes()
            result.down_nsec = down.all_nsec()
            session.progress.update(down.bytes, down.nsec)

            # -- Upload calibration -----------------------------------------
            self._set_status(TestStatus.INIT_UP)
            if not fallback:
                await self.barrier.wait()
            session.progress.reset()
            await session.pretest_upload(self.params.pretest_duration)

            # -- Upload -----------------------------------------------------
            self._set_status(TestStatus.UP)
            session.progress.reset()
            if not fallback:
                await self.barrier.wait()
            up = self._new_buffer()
            outcome = await session.upload(duration, up)
            result.upload_outcome = outcome.value
            result.up_bytes = up.all_bytes()
            result.up_nsec = up.all_nsec()
            session.progress.update(up.bytes, up.nsec)

            return result

        except asyncio.BrokenBarrierError:
            logger.info("thread %d: interrupted (broken barrier)", tid)
            return None
        except Exception as exc:
            logger.error("thread %d: %s", tid, exc)
            await self.barrier.abort()
            if self.on_abort:
                self.on_abort(exc)
            raise
        finally:
            result.total_down_bytes, result.total_up_bytes = session.totals()
            await session.close()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TestOrchestrator:
    """
    Runs ``params.threads`` workers in lockstep and merges their results.

    ``on_status`` receives every phase change, ``on_abort`` the error that
    stopped the run.  :meth:`current_speed_bps` may be polled at any time
    while :meth:`run` is active.
    """

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(
        self,
        params: TestParameters,
        ssl_context: Optional[ssl.SSLContext] = None,
        store_results: int = DEFAULT_STORE_RESULTS,
        min_diff_time: int = DEFAULT_MIN_DIFF_TIME,
        fallback_threshold: int = FALLBACK_CHUNK_THRESHOLD,
        session_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.params = params
        self.ssl_context = ssl_context
        self.store_results = store_results
        self.min_diff_time = min_diff_time
        self.fallback_threshold = fallback_threshold
        self.session_options = session_options or {}

        self.on_status: Optional[Callable[[TestStatus], None]] = None
        self.on_abort: Optional[AbortCallback] = None

        self.state = SharedState()
        self.workers: List[TestWorker] = []

    # -- Live state ---------------------------------------------------------

    @property
    def status(self) -> TestStatus:
        return self.state.status

    @property
    def fallback(self) -> bool:
        return self.state.fallback

    @property
    def partial_results(self) -> List[ThreadTestResult]:
        """Per-worker results as far as they got; useful after a failure."""
        return [w.result for w in self.workers]

    def current_speed_bps(self) -> float:
        """Sum of the live per-connection rates of the active phase."""
        return sum(w.session.progress.speed_bps for w in self.workers)

    # -- Run ----------------------------------------------------------------

    def _abort(self, exc: BaseException) -> None:
        if self.on_abort:
            self.on_abort(exc)

    def _create_workers(self) -> None:
        barrier = asyncio.Barrier(self.params.threads)
        self.state = SharedState(on_status=self.on_status)
        self.workers = []
        for tid in range(self.params.threads):
            session = RMBTSession(
                self.params,
                thread_id=tid,
                ssl_context=self.ssl_context,
                **self.session_options,
            )
            self.workers.append(
                TestWorker(
                    tid,
                    self.params,
                    session,
                    barrier,
                    self.state,
                    store_results=self.store_results,
                    min_diff_time=self.min_diff_time,
                    fallback_threshold=self.fallback_threshold,
                    on_abort=self._abort,
                )
            )

    async def run(self) -> TotalTestResult:
        self.params.validate()
        self._create_workers()
        logger.info(
            "starting test against %s:%d with %d thread(s)",
            self.params.host, self.params.port, self.params.threads,
        )

        tasks = [
            asyncio.create_task(w.run(), name=f"rmbt-worker-{w.thread_id}")
            for w in self.workers
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await self._cancel(tasks)
            self.state.set_status(TestStatus.ABORTED)
            raise

        failures = [t.exception() for t in done if not t.cancelled()]
        failures = [f for f in failures if f is not None]
        if failures:
            failure = failures[0]
            await self._cancel(list(pending))
            self.state.set_status(TestStatus.ERROR)
            raise TestAbortedError(f"test aborted: {failure}") from failure

        results = [t.result() for t in tasks]
        finished = [r for r in results if r is not None]
        total = TotalTestResult.merge(finished, fallback=self.state.fallback)
        self.state.set_status(TestStatus.DONE)
        logger.info(
            "test finished: down %.2f Mbps, up %.2f Mbps, ping %.3f ms",
            total.download.speed_mbps, total.upload.speed_mbps, total.ping_ms,
        )
        return total

    @staticmethod
    async def _cancel(tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
