"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions.

fingerprint_from_request() builds the Fingerprint exactly once per request
from the resolved client address and the User-Agent header. Nothing below the
route layer reads the request object.

Access credentials are checked in priority order:
  1. "accessToken" cookie -- set by /refresh and the login flow.
  2. Authorization: Bearer <token> header -- non-browser clients.

get_current_user_id() raises HTTP 401 if neither yields a valid access token.

Layer rule: no imports from presence/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Fingerprint
from auth.sessions import SessionManager
from auth.tokens import ACCESS_COOKIE, decode_access_token


def fingerprint_from_request(request: Request) -> Fingerprint:
    """Capture (client address, User-Agent) for issuance and rotation checks.

    request.client.host is already the forwarded address when
    ProxyHeadersMiddleware is mounted (TRUST_PROXY=true). A missing
    User-Agent is recorded as "" and must stay "" to match.
    """
    host = request.client.host if request.client else ""
    return Fingerprint(source_address=host, user_agent=request.headers.get("user-agent", ""))


def try_get_current_user_id(request: Request) -> str | None:
    """Return the subject of the request's access token, or None. Never raises."""
    manager: SessionManager = request.app.state.sessions

    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None
    return decode_access_token(manager.codec, token)


def get_current_user_id(request: Request) -> str:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user_id: str = Depends(get_current_user_id)): ...
    """
    user_id = try_get_current_user_id(request)
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user_id
