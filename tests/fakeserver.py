"""Scripted in-process RMBT measurement server for tests."""

import asyncio
import time

ACCEPT_LINE = "ACCEPT GETCHUNKS GETTIME PUT PUTNORESULT PING QUIT"


class FakeRMBTServer:
    """
    Speaks just enough of the measurement protocol to drive a client.

    ``upload_mode`` controls what happens after ``PUT``:

    * ``"ack"``        -- ``TIME t BYTES b`` every ``ack_interval`` seconds,
                          ``TIME t`` once the terminating chunk arrived
    * ``"time_only"``  -- a single ``TIME 500000000`` right away, nothing else
    * ``"silent"``     -- never acknowledges anything
    """

    def __init__(
        self,
        greeting="RMBTv0.3",
        token="secret",
        chunksize=4096,
        chunksize_line=None,
        terminate_download=True,
        chunk_delay=0.0,
        stream_delay=0.001,
        upload_mode="ack",
        ack_interval=0.05,
        pong_line="PONG",
        bad_greeting_for=(),
    ):
        self.greeting = greeting
        self.token = token
        self.chunksize = chunksize
        self.chunksize_line = chunksize_line or f"CHUNKSIZE {chunksize}"
        self.terminate_download = terminate_download
        self.chunk_delay = chunk_delay
        self.stream_delay = stream_delay
        self.upload_mode = upload_mode
        self.ack_interval = ack_interval
        self.pong_line = pong_line
        self.bad_greeting_for = set(bad_greeting_for)

        self.connections = 0
        self.commands = []
        self.port = None
        self._server = None
        self._tasks = set()

    # -- Lifecycle ----------------------------------------------------------

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        self._server.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._server.wait_closed()

    def commands_for(self, conn):
        return [c for n, c in self.commands if n == conn]

    # -- Helpers ------------------------------------------------------------

    def _chunk(self, last):
        return bytes(self.chunksize - 1) + (b"\xff" if last else b"\x00")

    def _has_terminator(self, data, offset):
        pos = self.chunksize - 1 - offset % self.chunksize
        while pos < len(data):
            if data[pos] == 0xFF:
                return True
            pos += self.chunksize
        return False

    @staticmethod
    async def _send(writer, line):
        writer.write(f"{line}\n".encode("ascii"))
        await writer.drain()

    @staticmethod
    async def _recv(reader):
        raw = await reader.readline()
        if not raw:
            return None
        return raw.decode("ascii").rstrip("\n")

    # -- Connection handling ------------------------------------------------

    async def _handle(self, reader, writer):
        task = asyncio.current_task()
        self._tasks.add(task)
        self.connections += 1
        conn = self.connections
        try:
            await self._serve(reader, writer, conn)
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()
            self._tasks.discard(task)

    async def _serve(self, reader, writer, conn):
        greeting = "RMBTv0.0-bogus" if conn in self.bad_greeting_for else self.greeting
        await self._send(writer, greeting)
        await self._send(writer, "ACCEPT TOKEN QUIT")

        line = await self._recv(reader)
        if line != f"TOKEN {self.token}":
            await self._send(writer, "ERR")
            return
        await self._send(writer, "OK")
        await self._send(writer, self.chunksize_line)

        while True:
            await self._send(writer, ACCEPT_LINE)
            line = await self._recv(reader)
            if line is None:
                return
            self.commands.append((conn, line))
            cmd, _, arg = line.partition(" ")

            if cmd == "GETCHUNKS":
                await self._getchunks(reader, writer, int(arg))
            elif cmd == "GETTIME":
                if not await self._gettime(reader, writer, int(arg)):
                    return
            elif cmd == "PUTNORESULT":
                await self._putnoresult(reader, writer)
            elif cmd == "PUT":
                if not await self._put(reader, writer):
                    return
            elif cmd == "PING":
                await self._send(writer, self.pong_line)
                await self._recv(reader)
                await self._send(writer, "TIME 123456")
            elif cmd == "QUIT":
                return
            else:
                await self._send(writer, "ERR")

    async def _getchunks(self, reader, writer, chunks):
        start = time.monotonic_ns()
        for i in range(chunks):
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            writer.write(self._chunk(last=i == chunks - 1))
            await writer.drain()
        await self._recv(reader)  # OK
        await self._send(writer, f"TIME {time.monotonic_ns() - start}")

    async def _gettime(self, reader, writer, seconds):
        start = time.monotonic_ns()
        end = start + seconds * 1_000_000_000
        while self.terminate_download or not writer.is_closing():
            if self.terminate_download and time.monotonic_ns() >= end:
                break
            writer.write(self._chunk(last=False))
            await writer.drain()
            await asyncio.sleep(self.stream_delay)

        if not self.terminate_download:
            return False

        writer.write(self._chunk(last=True))
        await writer.drain()
        await self._recv(reader)  # OK
        await self._send(writer, f"TIME {time.monotonic_ns() - start}")
        return True

    async def _putnoresult(self, reader, writer):
        await self._send(writer, "OK")
        start = time.monotonic_ns()
        total = 0
        while True:
            data = await reader.read(65536)
            if not data:
                return
            done = self._has_terminator(data, total)
            total += len(data)
            if done:
                break
        await self._send(writer, f"TIME {time.monotonic_ns() - start}")

    async def _put(self, reader, writer):
        await self._send(writer, "OK")
        start = time.monotonic_ns()
        if self.upload_mode == "time_only":
            await self._send(writer, "TIME 500000000")

        total = 0
        last_ack = start
        interval = int(self.ack_interval * 1_000_000_000)
        while True:
            data = await reader.read(65536)
            if not data:
                return False
            done = self._has_terminator(data, total)
            total += len(data)
            now = time.monotonic_ns()
            if self.upload_mode == "ack" and (done or now - last_ack >= interval):
                await self._send(writer, f"TIME {now - start} BYTES {total}")
                last_ack = now
            if done:
                break

        if self.upload_mode == "ack":
            await self._send(writer, f"TIME {time.monotonic_ns() - start}")
            return True

        # no summary line: hold the connection until the client leaves
        while await reader.read(65536):
            pass
        return False
