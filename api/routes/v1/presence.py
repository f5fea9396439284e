"""
api/routes/v1/presence.py -- Real-time presence channel.

Routes:
  WS  /ws?userId=<id>    -- presence channel; receives getOnlineUsers events
  GET /online-users      -- current online-user set (public)

Handshake: the client passes userId as a query parameter. A connection with
no userId is still attached to the broadcast, so it learns who is online,
but is not itself recorded as present.

Every channel runs a sender task (PresenceChannel.run) next to the receive
loop. Inbound frames are ignored; this channel only carries presence events.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Request, WebSocket

from api.models import OnlineUsersResponse
from presence.broadcaster import PresenceBroadcaster
from presence.channel import PresenceChannel
from presence.registry import PresenceRegistry

router = APIRouter()


@router.websocket("/ws")
async def presence_socket(websocket: WebSocket, userId: Optional[str] = None) -> None:  # noqa: N803 -- handshake param name
    registry: PresenceRegistry = websocket.app.state.presence
    broadcaster: PresenceBroadcaster = websocket.app.state.broadcaster

    await websocket.accept()
    channel = PresenceChannel(websocket)
    broadcaster.attach(channel)
    if userId:
        registry.connect(userId, channel.id)
    sender = asyncio.create_task(channel.run())

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        broadcaster.detach(channel)
        if userId:
            registry.disconnect(userId, channel.id)
        channel.close()
        await sender


@router.get("/online-users", response_model=OnlineUsersResponse)
async def online_users(request: Request) -> OnlineUsersResponse:
    """Return the ids of every user with a live presence channel."""
    registry: PresenceRegistry = request.app.state.presence
    return OnlineUsersResponse(users=sorted(registry.snapshot()))
