"""
Recorder for dxlistener: consumes a spot channel, appends every spot to a
JSON-lines file and/or hands it to a callback.

Usage:
    from dxlistener.recorder import SpotRecorder
    recorder = SpotRecorder(provider.start(), path="spots.jsonl", callback=print)
    recorder.start()
    ...
    await recorder.stop()
"""

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import aiofiles

from dxlistener.providers.base import Spot
from dxlistener.providers.dispatcher import SpotChannel

logger = logging.getLogger(__name__)

SpotCallback = Callable[[Spot], Union[None, Awaitable[None]]]


class SpotRecorder:
    """Drains a spot channel into a file and/or a callback."""

    def __init__(
        self,
        channel: SpotChannel,
        path: Optional[Union[str, Path]] = None,
        callback: Optional[SpotCallback] = None,
    ):
        self.channel = channel
        self.path = Path(path) if path else None
        self.callback = callback
        self.count = 0
        self.task: Optional[asyncio.Task] = None

    def start(self):
        """Start the recording task"""
        if self.task is None or self.task.done():
            self.task = asyncio.create_task(self.run(), name="spot-recorder")
        if self.path:
            logger.info(f"Recording spots to {self.path}")

    async def run(self):
        """Record spots until the channel ends."""
        f = None
        try:
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                f = await aiofiles.open(self.path, 'a')

            async for spot in self.channel:
                if f is not None:
                    await f.write(spot.to_json() + "\n")
                    await f.flush()
                await self._notify(spot)
                self.count += 1
        finally:
            if f is not None:
                await f.close()
            logger.debug(f"Recorder finished after {self.count} spot(s)")

    async def _notify(self, spot: Spot):
        if self.callback is None:
            return
        try:
            result = self.callback(spot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Spot callback failed for {spot.dx_callsign}: {e}", exc_info=True)

    async def stop(self):
        """Stop recording and drop the receiving end of the channel"""
        self.channel.close()
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

    async def wait_closed(self):
        """Wait until the channel has ended and everything was recorded"""
        if self.task is not None:
            await self.task
