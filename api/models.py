"""
API request and response models for chatgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
presence/models.py, which own the internal domain representation. Route
handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Session responses
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Response for POST /refresh. The credentials travel in cookies, never in the body."""

    model_config = ConfigDict(frozen=True)

    success: bool = True


class LogoutResponse(BaseModel):
    """Response for POST /user/logout. Always returned, whether or not a session existed."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Logged out"


class SessionInfo(BaseModel):
    """One live refresh-token session. The token value itself is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    ip: str
    user_agent: str
    created_at: str
    expires_at: int = Field(description="Unix seconds")


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    revoked: int


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


class OnlineUsersResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[str]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
