"""presence/ -- Online-user tracking for chatgate's real-time channel.

Layer rule: presence/ imports only stdlib. It does NOT import from api/,
auth/, or core/. The WebSocket endpoint in api/ drives it.
"""
