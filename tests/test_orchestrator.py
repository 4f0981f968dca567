"""End-to-end tests for rmbt.orchestrator against the scripted server."""

import asyncio
import unittest
from unittest import mock

from fakeserver import FakeRMBTServer

from rmbt.errors import ProtocolError, TestAbortedError
from rmbt.orchestrator import TestOrchestrator, TestWorker
from rmbt.params import TestParameters
from rmbt.progress import SharedState, TestStatus
from rmbt.session import RMBTSession

FAST = {"upload_max_wait": 0.5, "upload_forced_wait": 0.2, "download_grace": 0.5}


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    server_options = {}

    async def asyncSetUp(self):
        self.server = await FakeRMBTServer(**self.server_options).start()

    async def asyncTearDown(self):
        await self.server.stop()

    def make_params(self, threads=1, pretest=0.2):
        return TestParameters(
            host="127.0.0.1",
            port=self.server.port,
            token="secret",
            duration=1,
            pretest_duration=pretest,
            threads=threads,
        )

    def make_orchestrator(self, threads=1, **kwargs):
        orchestrator = TestOrchestrator(self.make_params(threads), session_options=dict(FAST), **kwargs)
        self.statuses = []
        self.aborts = []
        orchestrator.on_status = self.statuses.append
        orchestrator.on_abort = self.aborts.append
        return orchestrator


class TestFullRun(OrchestratorTestCase):
    async def test_three_threads(self):
        orchestrator = self.make_orchestrator(threads=3)
        total = await asyncio.wait_for(orchestrator.run(), 30)

        self.assertFalse(total.fallback)
        self.assertEqual(orchestrator.status, TestStatus.DONE)
        self.assertEqual(len(total.threads), 3)
        self.assertEqual(self.server.connections, 3)

        first, *others = total.threads
        self.assertEqual(len(first.pings), 5)
        self.assertIsNotNone(first.ping_shortest)
        for thread in others:
            self.assertEqual(thread.pings, [])
        for thread in total.threads:
            self.assertTrue(thread.down_bytes)
            self.assertTrue(thread.up_bytes)
            self.assertEqual(thread.reconnects, 0)
            self.assertEqual(thread.ip_server, "127.0.0.1")
            self.assertGreaterEqual(thread.total_down_bytes, thread.down_bytes[-1])

        self.assertGreater(total.download.speed_bps, 0)
        self.assertGreater(total.upload.speed_bps, 0)
        self.assertEqual(total.ping.count, 5)
        self.assertEqual(self.aborts, [])

        phases = [TestStatus.CONNECT, TestStatus.PRETEST_DOWN, TestStatus.PING, TestStatus.DOWN,
                  TestStatus.INIT_UP, TestStatus.UP, TestStatus.DONE]
        self.assertEqual(self.statuses, phases)

    async def test_phases_in_lockstep(self):
        orchestrator = self.make_orchestrator(threads=2)
        await asyncio.wait_for(orchestrator.run(), 30)
        for conn in (1, 2):
            commands = [c.split()[0] for c in self.server.commands_for(conn)]
            # calibration bursts, then the timed download, then upload work
            self.assertIn("GETTIME", commands)
            self.assertIn("PUT", commands)
            self.assertLess(commands.index("GETTIME"), commands.index("PUTNORESULT"))
            self.assertLess(commands.index("PUTNORESULT"), commands.index("PUT"))

    async def test_merged_speed_uses_common_instant(self):
        orchestrator = self.make_orchestrator(threads=2)
        total = await asyncio.wait_for(orchestrator.run(), 30)
        ends = [t.down_nsec[-1] for t in total.threads]
        self.assertEqual(total.download.duration_ns, min(ends))

    async def test_invalid_parameters(self):
        orchestrator = TestOrchestrator(self.make_params(threads=0))
        with self.assertRaises(ValueError):
            await orchestrator.run()
        self.assertEqual(self.server.connections, 0)


class TestFallback(OrchestratorTestCase):
    server_options = {"chunk_delay": 0.2}

    async def test_only_first_worker_continues(self):
        orchestrator = self.make_orchestrator(threads=3)
        total = await asyncio.wait_for(orchestrator.run(), 30)

        self.assertTrue(total.fallback)
        self.assertTrue(orchestrator.fallback)
        self.assertEqual(len(total.threads), 3)
        self.assertEqual(len(total.threads[0].pings), 5)
        self.assertTrue(total.threads[0].down_bytes)
        self.assertTrue(total.threads[0].up_bytes)
        for thread in total.threads[1:]:
            self.assertEqual(thread.down_bytes, [])
            self.assertEqual(thread.up_bytes, [])
            self.assertGreater(thread.total_down_bytes, 0)
        timed = [c for _, c in self.server.commands if c.startswith("GETTIME")]
        self.assertEqual(timed, ["GETTIME 1"])
        self.assertEqual(sum(1 for _, c in self.server.commands if c == "PUT"), 1)


class TestEndlessDownload(OrchestratorTestCase):
    server_options = {"terminate_download": False}

    async def test_single_reconnect(self):
        orchestrator = self.make_orchestrator(threads=1)
        total = await asyncio.wait_for(orchestrator.run(), 30)
        thread = total.threads[0]
        self.assertEqual(thread.reconnects, 1)
        self.assertEqual(self.server.connections, 2)
        self.assertTrue(thread.down_bytes)
        self.assertIsNotNone(thread.upload_outcome)
        self.assertIn("PUT", self.server.commands_for(2))

    async def test_connection_info_refreshed_after_reconnect(self):
        original = TestWorker._record_connection
        with mock.patch.object(
            TestWorker, "_record_connection", autospec=True, side_effect=original
        ) as record:
            orchestrator = self.make_orchestrator(threads=1)
            total = await asyncio.wait_for(orchestrator.run(), 30)
        self.assertEqual(record.call_count, 2)
        thread = total.threads[0]
        self.assertEqual(thread.ip_local, "127.0.0.1")
        self.assertEqual(thread.port_remote, self.server.port)


class TestMalformedPong(OrchestratorTestCase):
    server_options = {"pong_line": "PANG"}

    async def test_run_completes_with_failed_pings(self):
        orchestrator = self.make_orchestrator(threads=1)
        total = await asyncio.wait_for(orchestrator.run(), 30)
        thread = total.threads[0]
        self.assertEqual(orchestrator.status, TestStatus.DONE)
        self.assertEqual(thread.pings, [-1] * 5)
        self.assertIsNone(thread.ping_shortest)
        self.assertEqual(total.ping.count, 0)
        self.assertTrue(thread.down_bytes)
        self.assertTrue(thread.up_bytes)
        self.assertEqual(self.aborts, [])


class TestGreetingMismatch(OrchestratorTestCase):
    server_options = {"greeting": "RMBTv0.0-bogus"}

    async def test_aborts(self):
        orchestrator = self.make_orchestrator(threads=1)
        with self.assertRaises(TestAbortedError) as ctx:
            await asyncio.wait_for(orchestrator.run(), 10)
        self.assertIsInstance(ctx.exception.__cause__, ProtocolError)
        self.assertEqual(orchestrator.status, TestStatus.ERROR)
        self.assertEqual(len(self.aborts), 1)
        self.assertIsInstance(self.aborts[0], ProtocolError)

    async def test_worker_breaks_barrier_without_entering(self):
        barrier = mock.Mock()
        barrier.wait = mock.AsyncMock()
        barrier.abort = mock.AsyncMock()
        params = self.make_params()
        aborts = []
        worker = TestWorker(0, params, RMBTSession(params), barrier, SharedState(), on_abort=aborts.append)

        with self.assertRaises(ProtocolError):
            await worker.run()
        barrier.wait.assert_not_awaited()
        barrier.abort.assert_awaited_once()
        self.assertEqual(len(aborts), 1)
        self.assertIsNone(worker.session.stream)


class TestOneWorkerFails(OrchestratorTestCase):
    server_options = {"bad_greeting_for": {3}}

    async def test_siblings_released(self):
        orchestrator = self.make_orchestrator(threads=3)
        with self.assertRaises(TestAbortedError):
            await asyncio.wait_for(orchestrator.run(), 10)
        self.assertEqual(orchestrator.status, TestStatus.ERROR)
        self.assertEqual(len(self.aborts), 1)
        self.assertEqual(len(orchestrator.partial_results), 3)
        for worker in orchestrator.workers:
            self.assertIsNone(worker.session.stream)


class TestCancellation(OrchestratorTestCase):
    async def test_cancel_run(self):
        orchestrator = self.make_orchestrator(threads=2)
        task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(orchestrator.status, TestStatus.ABORTED)
        for worker in orchestrator.workers:
            self.assertIsNone(worker.session.stream)


class TestCurrentSpeed(OrchestratorTestCase):
    async def test_polled_during_run(self):
        orchestrator = self.make_orchestrator(threads=2)
        seen = []

        async def poll():
            while True:
                seen.append(orchestrator.current_speed_bps())
                await asyncio.sleep(0.05)

        poller = asyncio.create_task(poll())
        try:
            await asyncio.wait_for(orchestrator.run(), 30)
        finally:
            poller.cancel()
        self.assertTrue(any(speed > 0 for speed in seen))


if __name__ == "__main__":
    unittest.main()
