"""Fan the current session snapshot out to every connected consumer."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Protocol

log = logging.getLogger(__name__)

MAX_CHANNELS = 50
# A channel that cannot take a payload within this many seconds is dropped
SEND_TIMEOUT = 5.0


class Channel(Protocol):
    """A long-lived push connection (a Starlette ``WebSocket`` fits)."""

    async def send_text(self, data: str) -> None: ...


Listener = Callable[[list], None]


class Broadcaster:
    """Remote push channels plus in-process listeners.

    Every broadcast carries the full payload, serialized once for all
    remote channels; local listeners receive the Python objects directly.
    """

    def __init__(self, max_channels: int = MAX_CHANNELS, *, send_timeout: float = SEND_TIMEOUT):
        self.max_channels = max_channels
        self.send_timeout = send_timeout
        self._channels: list[Channel] = []
        self._listeners: list[Listener] = []

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def has_capacity(self) -> bool:
        return len(self._channels) < self.max_channels

    def add(self, channel: Channel) -> bool:
        """Register a channel. False when the cap is reached."""
        if channel in self._channels:
            return True
        if not self.has_capacity():
            log.warning("Rejecting push channel: %d channels already open", len(self._channels))
            return False
        self._channels.append(channel)
        return True

    def remove(self, channel: Channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def send_to(self, channel: Channel, payload: list) -> bool:
        """Send one payload to a single channel, dropping it on failure."""
        return await self._write(channel, json.dumps(payload))

    async def broadcast(self, payload: list) -> int:
        """Push to every channel and listener. Returns the number of channels reached."""
        delivered = 0
        if self._channels:
            text = json.dumps(payload)
            # Written concurrently so one slow channel costs at most one timeout.
            results = await asyncio.gather(*(self._write(channel, text) for channel in list(self._channels)))
            delivered = sum(results)

        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                log.exception("Local listener failed")
        return delivered

    async def _write(self, channel: Channel, text: str) -> bool:
        try:
            await asyncio.wait_for(channel.send_text(text), self.send_timeout)
        except asyncio.TimeoutError:
            log.warning("Dropping push channel: no write progress for %.1fs", self.send_timeout)
            self.remove(channel)
            return False
        except Exception as exc:
            log.debug("Dropping push channel after write failure: %s", exc)
            self.remove(channel)
            return False
        return True

    def clear(self) -> list[Channel]:
        channels, self._channels = self._channels, []
        return channels
