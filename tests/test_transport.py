"""Tests for rmbt.transport -- byte counting over a loopback connection."""

import asyncio
import unittest

from rmbt.errors import ConnectionLostError
from rmbt.transport import CountingStream


class TestCountingStreamLoopback(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.received = []

        async def handle(reader, writer):
            writer.write(b"HELLO\r\n")
            writer.write(b"\x00\x01\x02")
            await writer.drain()
            self.received.append(await reader.readline())
            writer.close()

        self.server = await asyncio.start_server(handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def asyncTearDown(self):
        self.server.close()
        await self.server.wait_closed()

    async def test_counts_both_directions(self):
        stream = await CountingStream.open("127.0.0.1", self.port)
        try:
            self.assertEqual(await stream.readline(), "HELLO")
            self.assertEqual(stream.bytes_read, 7)
            data = b""
            while len(data) < 3:
                data += await stream.read(3 - len(data))
            self.assertEqual(data, b"\x00\x01\x02")
            self.assertEqual(stream.bytes_read, 10)

            await stream.write_line("OK")
            self.assertEqual(stream.bytes_written, 3)

            self.assertEqual(await stream.read(10), b"")
            with self.assertRaises(ConnectionLostError):
                await stream.readline()
        finally:
            await stream.close()
        self.assertEqual(self.received, [b"OK\n"])

    async def test_close_twice(self):
        stream = await CountingStream.open("127.0.0.1", self.port)
        await stream.close()
        await stream.close()

    async def test_refused(self):
        self.server.close()
        await self.server.wait_closed()
        with self.assertRaises(ConnectionLostError):
            await CountingStream.open("127.0.0.1", self.port)


if __name__ == "__main__":
    unittest.main()
