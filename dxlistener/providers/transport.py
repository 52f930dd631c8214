"""
Line-oriented TCP session with a DX Cluster server.
"""
import asyncio
import logging
import re
import string
from typing import List, Optional, Sequence

from dxlistener.providers.errors import (
    ClusterIOError, ConnectError, ConnectionClosed, SessionStalled
)
from dxlistener.utils.logging_utils import describe_exception, printable

logger = logging.getLogger(__name__)

# DXSpider/AR-Cluster ask "login:", CC Cluster and RBN "Please enter your call:"
DEFAULT_LOGIN_PROMPTS = ('login:', 'call:')

DEFAULT_READ_SIZE = 4096
DEFAULT_MAX_LINE_BYTES = 8192

# Telnet subnegotiation (IAC SB ... IAC SE), option negotiation (IAC WILL/WONT/DO/DONT <opt>)
# and two-byte commands
TELNET_IAC_PATTERN = re.compile(rb'\xff(?:\xfa.*?\xff\xf0|[\xfb-\xfe].|[\xf0-\xfa])', re.DOTALL)

TRAILING_NOISE = string.whitespace + '\x07'


def clean_line(line: str) -> str:
    """Strip trailing whitespace and bell characters."""
    return line.rstrip(TRAILING_NOISE)


def decode_line(raw: bytes) -> str:
    """
    Turn one raw line (without its newline) into text.

    A trailing carriage return and telnet negotiation bytes are dropped, and
    bytes that are not valid UTF-8 are replaced rather than raising.
    """
    if raw.endswith(b'\r'):
        raw = raw[:-1]
    raw = TELNET_IAC_PATTERN.sub(b'', raw)
    return clean_line(raw.decode('utf-8', errors='replace'))


class ClusterSession:
    """One TCP connection to a cluster server, after login."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        self.reader = reader
        self.writer = writer
        self.host = host
        self.port = port
        self.banner: List[str] = []  # Lines received before the login prompt
        self._buffer = bytearray()
        self._discarding = False  # Skipping the rest of an oversized line
        self._max_line_bytes = max_line_bytes

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        login_identity: str,
        prompts: Sequence[str] = DEFAULT_LOGIN_PROMPTS,
        connect_timeout: float = 10.0,
        login_grace: float = 5.0,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ) -> 'ClusterSession':
        """
        Open a connection and log in.

        Args:
            host: Cluster server hostname
            port: Cluster server port
            login_identity: Callsign sent at the login prompt
            prompts: Prompt substrings that trigger the login line (case-insensitive)
            connect_timeout: Seconds allowed for the TCP connect
            login_grace: Seconds to wait for a prompt before sending the callsign anyway
            max_line_bytes: Longest line kept; longer lines are discarded

        Returns:
            Logged-in ClusterSession

        Raises:
            ConnectError: if the server cannot be reached or drops the connection during login
        """
        logger.info(f"Connecting to DX Cluster {host}:{port}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=connect_timeout
            )
        except asyncio.TimeoutError:
            raise ConnectError(host, port, f"Timeout connecting to {host}:{port}") from None
        except OSError as e:
            raise ConnectError(host, port, f"Cannot connect to {host}:{port}: {describe_exception(e)}") from e

        session = cls(reader, writer, host, port, max_line_bytes=max_line_bytes)
        try:
            await session._login(login_identity, prompts, login_grace)
        except ClusterIOError as e:
            await session.close()
            raise ConnectError(host, port, f"Login to {host}:{port} failed: {e}") from e
        except OSError as e:
            await session.close()
            raise ConnectError(host, port, f"Login to {host}:{port} failed: {describe_exception(e)}") from e
        except BaseException:
            # Cancelled mid-login
            await session.close()
            raise

        logger.info(f"Logged in to DX Cluster {host}:{port} as {login_identity}")
        return session

    async def _login(self, identity: str, prompts: Sequence[str], grace: float):
        """Wait for a login prompt (or the grace period) and send the callsign."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        needles = [p.lower().encode('ascii', errors='ignore') for p in prompts if p]

        prompt_end = None
        while prompt_end is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                chunk = await asyncio.wait_for(self.reader.read(DEFAULT_READ_SIZE), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if not chunk:
                raise ConnectionClosed(self.host, self.port, f"{self.host}:{self.port} closed the connection before login")
            self._buffer.extend(chunk)
            prompt_end = self._find_prompt(needles)

        if prompt_end is None:
            logger.debug(f"No login prompt from {self.host}:{self.port} within {grace:g}s, sending callsign anyway")
            prompt_end = len(self._buffer)
        while prompt_end < len(self._buffer) and self._buffer[prompt_end] in b' \t':
            prompt_end += 1

        head = bytes(self._buffer[:prompt_end])
        del self._buffer[:prompt_end]
        for raw in head.split(b'\n'):
            text = decode_line(raw)
            if text:
                self.banner.append(text)
                logger.debug(f"Banner {self.host}:{self.port}: {printable(text)}")

        self.writer.write(f"{identity}\r\n".encode('ascii', errors='replace'))
        await self.writer.drain()

    def _find_prompt(self, needles: Sequence[bytes]) -> Optional[int]:
        """Return the offset just past the earliest prompt in the buffer."""
        haystack = self._buffer.lower()
        best = None
        for needle in needles:
            index = haystack.find(needle)
            if index != -1 and (best is None or index + len(needle) < best):
                best = index + len(needle)
        return best

    def _feed(self, chunk: bytes):
        if self._discarding:
            newline = chunk.find(b'\n')
            if newline == -1:
                return
            self._discarding = False
            chunk = chunk[newline + 1:]

        self._buffer.extend(chunk)

        # Only the unterminated tail can grow without bound
        tail_start = self._buffer.rfind(b'\n') + 1
        if len(self._buffer) - tail_start > self._max_line_bytes:
            logger.warning(
                f"Discarding line over {self._max_line_bytes} bytes from {self.host}:{self.port}"
            )
            del self._buffer[tail_start:]
            self._discarding = True

    def _pop_line(self) -> Optional[str]:
        while True:
            newline = self._buffer.find(b'\n')
            if newline == -1:
                return None
            raw = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            if len(raw) > self._max_line_bytes:
                logger.warning(
                    f"Discarding line over {self._max_line_bytes} bytes from {self.host}:{self.port}"
                )
                continue
            return decode_line(raw)

    async def next_line(self, timeout: Optional[float] = None) -> str:
        """
        Read the next complete line.

        Args:
            timeout: Seconds to wait for a complete line (None waits forever)

        Returns:
            Cleaned line text (may be empty)

        Raises:
            ConnectionClosed: the server closed the connection
            SessionStalled: no complete line within ``timeout``
            ClusterIOError: the read failed
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            line = self._pop_line()
            if line is not None:
                return line

            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise SessionStalled(self.host, self.port, timeout)

            try:
                chunk = await asyncio.wait_for(self.reader.read(DEFAULT_READ_SIZE), timeout=remaining)
            except asyncio.TimeoutError:
                raise SessionStalled(self.host, self.port, timeout) from None
            except OSError as e:
                raise ClusterIOError(
                    self.host, self.port,
                    f"Read from {self.host}:{self.port} failed: {describe_exception(e)}"
                ) from e

            if not chunk:
                if self._buffer:
                    logger.debug(f"Dropping partial line at close: {printable(self._buffer.decode('utf-8', errors='replace'))}")
                    self._buffer.clear()
                raise ConnectionClosed(self.host, self.port)

            self._feed(chunk)

    @property
    def is_closing(self) -> bool:
        return self.writer.is_closing()

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing {self.host}:{self.port}: {describe_exception(e)}")
