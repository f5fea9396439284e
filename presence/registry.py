"""
presence/registry.py -- Who is connected right now.

PresenceRegistry maps user_id -> connection handle. At most one entry per user:
a second connection for the same user replaces the first (last connection
wins). disconnect() only removes the entry when the handle matches, so the
late disconnect of a replaced connection cannot erase the newer one.

Every connect and disconnect publishes a PresenceSnapshot to the subscribed
listeners, even when the set of user ids did not change. Listeners run after
the lock is released; the lock only guards the dict.

The lock is injectable (anything usable as a context manager) so tests and
alternative hosts can swap the serialization strategy.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from contextlib import AbstractContextManager

from presence.models import PresenceSnapshot

logger = logging.getLogger("chatgate.presence")

Listener = Callable[[PresenceSnapshot], None]


class PresenceRegistry:
    def __init__(self, lock: AbstractContextManager | None = None) -> None:
        self._lock = lock if lock is not None else threading.Lock()
        self._entries: dict[str, Hashable] = {}
        self._version = 0
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def connect(self, user_id: str, handle: Hashable) -> None:
        """Record handle as user_id's connection, replacing any previous one."""
        with self._lock:
            previous = self._entries.get(user_id)
            self._entries[user_id] = handle
            snapshot = self._advance()
            listeners = list(self._listeners)
        if previous is not None and previous != handle:
            logger.info("User %s reconnected; replaced connection %s with %s", user_id, previous, handle)
        else:
            logger.info("User %s connected (%s)", user_id, handle)
        self._notify(listeners, snapshot)

    def disconnect(self, user_id: str, handle: Hashable) -> bool:
        """Remove user_id if handle is still its current connection.

        Returns True if the entry was removed. A snapshot is published either way.
        """
        with self._lock:
            removed = user_id in self._entries and self._entries[user_id] == handle
            if removed:
                del self._entries[user_id]
            snapshot = self._advance()
            listeners = list(self._listeners)
        if removed:
            logger.info("User %s disconnected (%s)", user_id, handle)
        else:
            logger.info("Ignored stale disconnect for user %s (%s)", user_id, handle)
        self._notify(listeners, snapshot)
        return removed

    def clear(self) -> None:
        """Drop every entry without notifying. Used at shutdown."""
        with self._lock:
            self._entries.clear()
            self._version += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._entries)

    def current(self) -> PresenceSnapshot:
        with self._lock:
            return PresenceSnapshot(version=self._version, user_ids=frozenset(self._entries))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _advance(self) -> PresenceSnapshot:
        # Caller holds the lock.
        self._version += 1
        return PresenceSnapshot(version=self._version, user_ids=frozenset(self._entries))

    @staticmethod
    def _notify(listeners: list[Listener], snapshot: PresenceSnapshot) -> None:
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                # Remaining listeners still run.
                logger.exception("Presence listener %r failed", listener)
