"""Loopback cluster server for transport and provider tests."""

import asyncio
from typing import Awaitable, Callable, List, Optional

Script = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]

SPOT_A = "DX de W1AW:      14025.0  JA1ABC       CQ DX                          1234Z"
SPOT_B = "DX de K1TTT:     21074.0  VK2XYZ       FT8 -12                        1235Z"
SPOT_C = "DX de RBN-7:     7030.0   K5XYZ        CW    18 dB  22 WPM  CQ        0512Z"


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


async def send(writer: asyncio.StreamWriter, *lines: str, newline: str = "\r\n"):
    for line in lines:
        writer.write((line + newline).encode("utf-8"))
    await writer.drain()


async def prompt_and_login(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                           prompt: str = "login: ") -> bytes:
    """Send a login prompt and return the raw login line."""
    writer.write(prompt.encode("ascii"))
    await writer.drain()
    return await asyncio.wait_for(reader.readline(), timeout=5)


async def idle(reader: asyncio.StreamReader, timeout: float = 5):
    """Keep the connection open until the client hangs up."""
    try:
        await asyncio.wait_for(reader.read(), timeout=timeout)
    except (asyncio.TimeoutError, ConnectionError):
        pass


class FakeClusterServer:
    """Serves one script per incoming connection; extra connections are closed at once."""

    def __init__(self, scripts: Optional[List[Script]] = None):
        self.scripts = list(scripts or [])
        self.connections = 0
        self.logins: List[bytes] = []
        self.server: Optional[asyncio.AbstractServer] = None
        self.port: Optional[int] = None

    async def start(self) -> "FakeClusterServer":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        index = self.connections
        self.connections += 1
        try:
            if index < len(self.scripts):
                await self.scripts[index](reader, writer)
        finally:
            writer.close()

    def stop_listening(self):
        self.server.close()

    async def close(self):
        self.server.close()
        await self.server.wait_closed()


async def unused_port() -> int:
    """A loopback port with nothing listening on it."""
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port
