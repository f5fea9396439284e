"""
presence/broadcaster.py -- Fan the online-user set out to every channel.

PresenceBroadcaster subscribes to a PresenceRegistry. Each change is offered
to every attached channel; there is no per-recipient targeting, no
acknowledgement and no retry. Channels keep only their newest undelivered
snapshot, so a slow consumer skips intermediate states.
"""

from __future__ import annotations

import logging
import threading

from presence.channel import PresenceChannel
from presence.models import PresenceSnapshot
from presence.registry import PresenceRegistry

logger = logging.getLogger("chatgate.presence")


class PresenceBroadcaster:
    """Usage:
    broadcaster = PresenceBroadcaster(registry)
    broadcaster.attach(channel)      # channel immediately gets the current set
    registry.connect("u1", channel.id)  # every attached channel gets {"u1"}
    """

    def __init__(self, registry: PresenceRegistry) -> None:
        self._registry = registry
        self._channels: set[PresenceChannel] = set()
        self._lock = threading.Lock()
        registry.subscribe(self.publish)

    def attach(self, channel: PresenceChannel) -> None:
        with self._lock:
            self._channels.add(channel)
        channel.offer(self._registry.current())

    def detach(self, channel: PresenceChannel) -> None:
        with self._lock:
            self._channels.discard(channel)

    def publish(self, snapshot: PresenceSnapshot) -> None:
        """Offer snapshot to every attached channel. Registry listener."""
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.offer(snapshot)
        logger.debug("Presence v%d (%d online) offered to %d channels", snapshot.version, len(snapshot.user_ids), len(channels))

    def close(self) -> None:
        """Stop listening and close every channel. Used at shutdown."""
        self._registry.unsubscribe(self.publish)
        with self._lock:
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.close()
