"""
Delivery of parsed spots to the consumer.

The channel is bounded and ordered. A full channel blocks the producer
instead of dropping spots, so a slow consumer slows down line reading
rather than losing data.
"""
import asyncio
import logging
from typing import Optional

from dxlistener.providers.base import Spot
from dxlistener.providers.errors import ChannelClosed, ParseError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000

# Marks the end of the stream after the producer finished
_END = object()


class SpotChannel:
    """Bounded FIFO of spots with a single producer."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self.capacity = capacity
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False    # Consumer dropped its end
        self._finished = False  # Producer will send nothing more
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def qsize(self) -> int:
        return self._queue.qsize()

    async def wait_closed(self):
        """Wait until the consumer closes the channel."""
        await self._closed_event.wait()

    async def send(self, spot: Spot):
        """
        Put a spot into the channel, waiting while it is full.

        Raises:
            ChannelClosed: if the consumer closed the channel before or during the wait
        """
        if self._closed:
            raise ChannelClosed()
        await self._queue.put(spot)
        if self._closed:
            raise ChannelClosed()

    def finish(self):
        """Producer side: no more spots will follow."""
        if self._finished:
            return
        self._finished = True
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            # receive() checks the flag once the backlog is drained
            pass

    async def receive(self) -> Spot:
        """
        Wait for the next spot.

        Raises:
            StopAsyncIteration: when the producer has finished and every spot was received
            ChannelClosed: if the consumer already closed the channel
        """
        if self._closed:
            raise ChannelClosed()
        if self._finished and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any other receiver
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    def close(self):
        """
        Consumer side: stop receiving.

        Pending spots are discarded and any blocked sender is released so it
        observes ChannelClosed.
        """
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def __aiter__(self):
        return self

    async def __anext__(self) -> Spot:
        return await self.receive()


class SpotDispatcher:
    """Publishes spots (and optionally parse diagnostics) for one session."""

    def __init__(self, channel: SpotChannel, diagnostics: Optional[asyncio.Queue] = None):
        """
        Args:
            channel: Channel the consumer reads spots from
            diagnostics: Optional bounded queue that receives ParseErrors
        """
        self.channel = channel
        self.diagnostics = diagnostics
        self.published = 0
        self.dropped_diagnostics = 0

    async def publish(self, spot: Spot):
        """
        Deliver a spot, blocking while the channel is full.

        Raises:
            ChannelClosed: if the consumer has gone away
        """
        await self.channel.send(spot)
        self.published += 1

    def publish_error(self, error: ParseError):
        """Forward a parse error to the diagnostics queue without blocking."""
        if self.diagnostics is None:
            return
        try:
            self.diagnostics.put_nowait(error)
        except asyncio.QueueFull:
            self.dropped_diagnostics += 1
            logger.debug(f"Diagnostics queue full, dropped: {error}")

    def finish(self):
        self.channel.finish()
