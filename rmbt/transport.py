"""
Byte-counting stream transport.

Thin wrapper around an ``asyncio`` reader/writer pair.  It adds nothing to
the bytes on the wire; it only counts what passes through in each direction
so the session can report total traffic for the whole connection lifetime.
"""
from __future__ import annotations

import asyncio
import ssl
from typing import Optional, Tuple

from .errors import ConnectionLostError


class CountingStream:
    """Line and raw chunk I/O over one TCP (or TLS) connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self.bytes_read = 0
        self.bytes_written = 0

    # -- Constructors -------------------------------------------------------

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> CountingStream:
        try:
            reader, writer = await asyncio.open_connection(host, port, ssl=ssl_context)
        except OSError as exc:
            raise ConnectionLostError(f"cannot connect to {host}:{port}: {exc}") from exc
        return cls(reader, writer)

    # -- Reading ------------------------------------------------------------

    async def readline(self) -> str:
        """Return the next line without its terminator."""
        try:
            raw = await self._reader.readline()
        except (ConnectionError, OSError) as exc:
            raise ConnectionLostError(str(exc)) from exc
        if not raw:
            raise ConnectionLostError("connection lost")
        self.bytes_read += len(raw)
        return raw.decode("ascii", errors="replace").rstrip("\r\n")

    async def read(self, n: int) -> bytes:
        """Read up to *n* bytes; ``b""`` means end of stream."""
        try:
            data = await self._reader.read(n)
        except (ConnectionError, OSError) as exc:
            raise ConnectionLostError(str(exc)) from exc
        self.bytes_read += len(data)
        return data

    # -- Writing ------------------------------------------------------------

    def write(self, data: bytes) -> None:
        self._writer.write(data)
        self.bytes_written += len(data)

    async def write_line(self, line: str) -> None:
        self.write(f"{line}\n".encode("ascii"))
        await self.drain()

    async def drain(self) -> None:
        try:
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise ConnectionLostError(str(exc)) from exc

    # -- Connection info ----------------------------------------------------

    @property
    def local_address(self) -> Optional[Tuple]:
        return self._writer.get_extra_info("sockname")

    @property
    def remote_address(self) -> Optional[Tuple]:
        return self._writer.get_extra_info("peername")

    @property
    def encryption(self) -> Optional[str]:
        """``"<protocol> (<cipher>)"`` for TLS connections, else ``None``."""
        ssl_object = self._writer.get_extra_info("ssl_object")
        if ssl_object is None:
            return None
        cipher = ssl_object.cipher()
        return f"{ssl_object.version()} ({cipher[0] if cipher else '?'})"

    # -- Teardown -----------------------------------------------------------

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass  # peer already gone
