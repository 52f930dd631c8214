"""
DX Cluster provider: keeps one cluster session alive and streams its spots.
"""
import asyncio
import logging
from enum import Enum
from typing import Iterable, Optional

from dxlistener.providers.base import BaseSpotProvider, SpotFormat
from dxlistener.providers.dispatcher import SpotChannel, SpotDispatcher
from dxlistener.providers.errors import (
    ChannelClosed, ClusterIOError, ConnectError, ParseError
)
from dxlistener.providers.parser import classify, identify_server, parse
from dxlistener.providers.transport import ClusterSession
from dxlistener.utils.config import ClusterConfig
from dxlistener.utils.logging_utils import printable

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


def backoff_delay(failures: int, initial: float, maximum: float) -> float:
    """
    Delay before the next connect attempt.

    Args:
        failures: Consecutive failures so far (1 for the first)
        initial: Delay after the first failure
        maximum: Upper bound

    Returns:
        initial * 2 ** (failures - 1), capped at maximum; 0 when nothing failed
    """
    if failures < 1:
        return 0.0
    exponent = min(failures - 1, 62)
    return min(initial * (2 ** exponent), maximum)


class DXClusterProvider(BaseSpotProvider):
    """Provider for one DX Cluster telnet server."""

    def __init__(self, config: ClusterConfig, diagnostics: Optional[asyncio.Queue] = None):
        """
        Initialize DX Cluster provider.

        Args:
            config: Cluster settings
            diagnostics: Optional bounded queue that receives ParseErrors
        """
        super().__init__(config.name)
        self.config = config
        self.channel = SpotChannel(config.channel_capacity)
        self.dispatcher = SpotDispatcher(self.channel, diagnostics)
        self.session: Optional[ClusterSession] = None
        self.task: Optional[asyncio.Task] = None

        self.state = SessionState.DISCONNECTED
        self.retry_count = 0  # Consecutive failures, drives the backoff
        self.connect_failures = 0  # Consecutive failed connects, checked against max_connect_attempts
        self.last_line_at: Optional[float] = None  # Event loop clock
        self.parse_errors = 0

        # Tag for conventional-grammar spots, learned from the banner unless pinned
        self.server_format = config.server_format or SpotFormat.DXSPIDER
        self._identify_server = config.server_format is None

    def _set_state(self, state: SessionState):
        if state is not self.state:
            logger.debug(f"{self.source_name}: {self.state.value} -> {state.value}")
            self.state = state

    def start(self) -> SpotChannel:
        """
        Start the session task.

        Returns:
            The channel spots are delivered through
        """
        if self.state is SessionState.STOPPED:
            raise RuntimeError(f"Provider {self.source_name} already stopped")
        if self.task is None or self.task.done():
            self.task = asyncio.create_task(self.run(), name=f"dxcluster:{self.source_name}")
        return self.channel

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def run(self):
        """
        Connect, read spots and reconnect until stopped.

        Returns normally when the consumer closes the channel or stop() is
        called. Raises ConnectError only when max_connect_attempts is set and
        exhausted.
        """
        try:
            while True:
                session = await self._connect()
                try:
                    await self._read_spots(session)
                except ClusterIOError as e:
                    logger.warning(f"Lost connection to {self.source_name}: {e}")
                finally:
                    await self._close_session()

                self._set_state(SessionState.DISCONNECTED)
                self.retry_count += 1
                delay = self._next_delay()
                logger.info(f"Reconnecting to {self.source_name} in {delay:g} seconds")
                await self._backoff(delay)
        except ChannelClosed:
            logger.info(f"Spot channel for {self.source_name} closed by consumer, stopping")
        finally:
            self._set_state(SessionState.STOPPED)
            self.dispatcher.finish()

    def _next_delay(self) -> float:
        return backoff_delay(self.retry_count, self.config.backoff_initial, self.config.backoff_max)

    def _check_channel(self):
        if self.channel.closed:
            raise ChannelClosed()

    async def _backoff(self, delay: float):
        """Sleep before reconnecting; ends early with ChannelClosed if the consumer goes away."""
        self._check_channel()
        try:
            await asyncio.wait_for(self.channel.wait_closed(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ChannelClosed()

    async def _connect(self) -> ClusterSession:
        """Connect with exponential backoff until a session is logged in."""
        cfg = self.config
        loop = asyncio.get_running_loop()

        while True:
            self._check_channel()
            self._set_state(SessionState.CONNECTING)
            try:
                session = await ClusterSession.connect(
                    cfg.host,
                    cfg.port,
                    cfg.login_identity,
                    prompts=cfg.login_prompts,
                    connect_timeout=cfg.connect_timeout,
                    login_grace=cfg.login_grace,
                )
            except ConnectError as e:
                self.retry_count += 1
                self.connect_failures += 1
                self._set_state(SessionState.DISCONNECTED)
                if cfg.max_connect_attempts is not None and self.connect_failures >= cfg.max_connect_attempts:
                    logger.error(f"Giving up on {self.source_name} after {self.connect_failures} failed attempts: {e}")
                    raise
                delay = self._next_delay()
                logger.warning(f"{e}. Will retry in {delay:g} seconds (attempt {self.connect_failures})")
                await self._backoff(delay)
                continue

            self.session = session
            self.retry_count = 0
            self.connect_failures = 0
            self.last_line_at = loop.time()
            self._set_state(SessionState.CONNECTED)
            logger.info(f"Connected to DX Cluster {self.source_name}")
            self._scan_banner(session.banner)
            return session

    def _scan_banner(self, lines: Iterable[str]):
        if not self._identify_server:
            return
        for line in lines:
            detected = identify_server(line)
            if detected is not None:
                if detected is not self.server_format:
                    logger.info(f"{self.source_name} identified as {detected.value}")
                self.server_format = detected
                self._identify_server = False
                return

    async def _read_spots(self, session: ClusterSession):
        """Read lines until the session fails; publish every parsed spot."""
        loop = asyncio.get_running_loop()
        # Welcome text follows the login, so keep looking until spots start
        scanning = self._identify_server

        while True:
            line = await session.next_line(timeout=self.config.stall_timeout)
            self.last_line_at = loop.time()
            self._check_channel()
            if not line:
                continue

            candidate = classify(line, self.server_format)
            if candidate is None:
                if scanning:
                    self._scan_banner([line])
                    scanning = self._identify_server
                continue
            scanning = False

            try:
                spot = parse(candidate)
            except ParseError as e:
                self.parse_errors += 1
                logger.debug(f"Dropping spot from {self.source_name}: {e.__class__.__name__}: {printable(line)}")
                self.dispatcher.publish_error(e)
                continue

            await self.dispatcher.publish(spot)

    async def _close_session(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def stop(self):
        """Stop the session task and close the connection."""
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        else:
            await self._close_session()
            self._set_state(SessionState.STOPPED)
            self.dispatcher.finish()
        logger.info(f"DX Cluster provider {self.source_name} stopped")

    async def wait_closed(self):
        """
        Wait for the session task to end.

        Cancelling the wait (e.g. a wait_for timeout) leaves the provider running.

        Raises:
            ConnectError: if the provider gave up connecting
        """
        if self.task is None:
            return
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise

    def status(self) -> dict:
        """Snapshot of the session state for logging and health checks."""
        return {
            'name': self.source_name,
            'state': self.state.value,
            'retry_count': self.retry_count,
            'connect_failures': self.connect_failures,
            'last_line_at': self.last_line_at,
            'server_format': self.server_format.value,
            'published': self.dispatcher.published,
            'parse_errors': self.parse_errors,
        }
