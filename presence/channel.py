"""
presence/channel.py -- One connected real-time client.

A PresenceChannel wraps anything with an async send_json() (a Starlette
WebSocket in production, a recording fake in tests). offer() is synchronous
and never blocks: it stores the snapshot in a single-slot mailbox and wakes
the channel's sender task. If several snapshots arrive before the sender
runs, only the newest one is sent.

offer() and close() must be called from the event loop the sender task runs on.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

from presence.models import PresenceSnapshot

logger = logging.getLogger("chatgate.presence")


class JsonSender(Protocol):
    async def send_json(self, data: Any) -> None: ...


class PresenceChannel:
    def __init__(self, sender: JsonSender, channel_id: str | None = None) -> None:
        self.id = channel_id or uuid.uuid4().hex
        self._sender = sender
        self._pending: PresenceSnapshot | None = None
        self._last_version = -1
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, snapshot: PresenceSnapshot) -> None:
        """Queue snapshot for delivery unless something newer is already queued or sent."""
        if self._closed:
            return
        newest = self._pending.version if self._pending is not None else self._last_version
        if snapshot.version <= newest:
            return
        self._pending = snapshot
        self._wakeup.set()

    def close(self) -> None:
        self._closed = True
        self._wakeup.set()

    async def run(self) -> None:
        """Deliver snapshots until close() is called or a send fails."""
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._closed:
                return
            snapshot, self._pending = self._pending, None
            if snapshot is None:
                continue
            self._last_version = snapshot.version
            try:
                await self._sender.send_json(snapshot.to_event())
            except Exception as exc:
                logger.debug("Channel %s stopped sending: %s", self.id, exc)
                self._closed = True
                return
