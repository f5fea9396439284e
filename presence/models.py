"""
presence/models.py -- Value types shared by the registry, broadcaster and channels.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass

# Event name the chat client listens for (kept from the original socket.io wire format).
ONLINE_USERS_EVENT = "getOnlineUsers"


@dataclass(frozen=True)
class PresenceSnapshot:
    """The online-user set at one registry version.

    version increases by one on every connect/disconnect, so a consumer that
    receives snapshots out of order can always keep the newest one.
    """

    version: int
    user_ids: frozenset[str]

    def to_event(self) -> dict:
        return {"event": ONLINE_USERS_EVENT, "data": sorted(self.user_ids)}
