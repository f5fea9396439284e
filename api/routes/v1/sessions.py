"""
api/routes/v1/sessions.py -- Refresh token rotation and session management endpoints.

Routes:
  POST /refresh                  -- rotate the refreshToken cookie; sets both cookies
  POST /user/logout              -- delete the session, clear both cookies; always 200
  GET  /user/sessions            -- list the caller's live sessions (requires auth)
  POST /user/sessions/revoke     -- log the caller out everywhere (requires auth)

The paths are unversioned because the chat frontend calls them directly.

Security:
  [H2] POST /refresh is rate-limited per client address (REFRESH_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that sets credentials.
  Every SessionError raised by SessionManager is turned into a 401 by the
  handler in api/main.py; the routes only deal with the success path.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, refresh_rate_limit
from api.models import LogoutResponse, RevokeResponse, SessionInfo, SuccessResponse
from auth.dependencies import fingerprint_from_request, get_current_user_id
from auth.models import Fingerprint
from auth.sessions import SessionManager
from auth.tokens import REFRESH_COOKIE, clear_session_cookies, set_session_cookies
from core.config import get_settings

# Auth policy:
# - POST /refresh:               public -- the refresh cookie IS the credential
# - POST /user/logout:           public -- must work with an expired or missing session
# - GET  /user/sessions:         requires auth (get_current_user_id)
# - POST /user/sessions/revoke:  requires auth (get_current_user_id)
router = APIRouter()


@limiter.limit(refresh_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/refresh", response_model=SuccessResponse)
def refresh(request: Request, fingerprint: Fingerprint = Depends(fingerprint_from_request)) -> JSONResponse:
    """Exchange the refreshToken cookie for a new access/refresh pair.

    The presented token is consumed. Replaying it afterwards, or presenting it
    from a different address or User-Agent, fails with 401; the latter also
    revokes every session the user has.
    """
    manager: SessionManager = request.app.state.sessions
    tokens = manager.rotate_session(request.cookies.get(REFRESH_COOKIE), fingerprint)

    resp = JSONResponse(status_code=200, content=SuccessResponse().model_dump())
    set_session_cookies(resp, tokens, get_settings())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/user/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the session behind the refreshToken cookie and clear both cookies.

    Idempotent: a missing, unknown or already deleted token still returns 200.
    """
    manager: SessionManager = request.app.state.sessions
    manager.logout(request.cookies.get(REFRESH_COOKIE))

    resp = JSONResponse(status_code=200, content=LogoutResponse().model_dump())
    clear_session_cookies(resp, get_settings())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/user/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, user_id: str = Depends(get_current_user_id)) -> list[SessionInfo]:
    """List the caller's live refresh-token sessions, newest first."""
    manager: SessionManager = request.app.state.sessions
    return [
        SessionInfo(
            id=s.id,
            ip=s.ip,
            user_agent=s.user_agent,
            created_at=s.created_at or "",
            expires_at=s.expires_at,
        )
        for s in manager.list_sessions(user_id)
    ]


@router.post("/user/sessions/revoke", response_model=RevokeResponse)
def revoke_sessions(request: Request, user_id: str = Depends(get_current_user_id)) -> JSONResponse:
    """Revoke every refresh token the caller holds, including the current one."""
    manager: SessionManager = request.app.state.sessions
    revoked = manager.revoke_all(user_id)

    resp = JSONResponse(status_code=200, content=RevokeResponse(revoked=revoked).model_dump())
    clear_session_cookies(resp, get_settings())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
