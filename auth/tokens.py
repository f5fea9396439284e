"""
auth/tokens.py -- Credential codec and session cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Both credentials are JWTs signed with
       SECRET_KEY. Access tokens carry typ="access" and live 15 minutes;
       refresh tokens carry typ="refresh" and live 7 days. The typ claim stops
       an access token from being presented to /refresh and vice versa.

  jti: every token gets secrets.token_hex(16) as a jti claim. Without it two
       tokens for the same subject signed in the same second are byte-identical,
       which would collide on the store's UNIQUE(token) constraint.

  Expiry: checked against the codec's own clock instead of python-jose's
       wall-clock check, so tests can mint tokens "in the past" and the
       verification path is the same one production uses.

  Cookies: httpOnly always. In production (DEBUG off) Secure + SameSite=None
       so the SPA on FRONTEND_URL can send them cross-site; Lax otherwise.

Layer rule: no imports from api/ or presence/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import CredentialExpired, InvalidSignature
from core.config import Settings

logger = logging.getLogger("chatgate.auth")

_ALGORITHM = "HS256"

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class CredentialCodec:
    """Stateless sign/verify for expiring credentials.

    Usage:
        codec = CredentialCodec(settings.secret_key)
        value = codec.sign({"sub": "u1", "typ": "refresh"}, timedelta(days=7))
        payload = codec.verify(value, token_type="refresh")
    """

    def __init__(self, secret_key: str, clock: Callable[[], datetime] = _utcnow) -> None:
        self._secret_key = secret_key
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def sign(self, payload: dict, ttl: timedelta) -> str:
        """Return a signed JWT carrying payload plus iat, exp and a random jti."""
        issued = self._clock()
        claims = dict(payload)
        claims["iat"] = int(issued.timestamp())
        claims["exp"] = int((issued + ttl).timestamp())
        claims["jti"] = secrets.token_hex(16)
        return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, value: str, token_type: str | None = None) -> dict:
        """Verify signature and expiry. Returns the payload.

        Raises InvalidSignature for anything malformed, tampered, or of the wrong
        typ; CredentialExpired when exp is at or before the codec's clock.
        """
        try:
            payload = jwt.decode(
                value,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except ExpiredSignatureError as exc:
            raise CredentialExpired("Credential expired.") from exc
        except JWTError as exc:
            raise InvalidSignature("Credential signature is invalid.") from exc

        exp = payload.get("exp")
        if not isinstance(exp, int) or not payload.get("sub"):
            raise InvalidSignature("Credential is missing required claims.")
        if token_type is not None and payload.get("typ") != token_type:
            raise InvalidSignature(f"Expected a {token_type} credential.")
        if exp <= int(self._clock().timestamp()):
            raise CredentialExpired("Credential expired.")
        return payload


def decode_access_token(codec: CredentialCodec, token: str) -> str | None:
    """Return the subject of a valid access token, or None on any failure.

    Returning None (rather than raising) keeps the dependency layer simple:
    any invalid token is treated as unauthenticated.
    """
    try:
        payload = codec.verify(token, token_type=ACCESS_TOKEN_TYPE)
    except (InvalidSignature, CredentialExpired):
        return None
    return str(payload["sub"])


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _cookie_policy(settings: Settings) -> dict:
    if settings.production:
        return {"httponly": True, "secure": True, "samesite": "none"}
    return {"httponly": True, "secure": False, "samesite": "lax"}


def set_session_cookies(response, tokens, settings: Settings) -> None:
    """Write both credentials as httpOnly cookies on the response.

    max_age matches each JWT's lifetime so cookie and token expire together.

    Args:
        response: FastAPI/Starlette response object.
        tokens:   SessionTokens returned by SessionManager.
        settings: Application settings (cookie policy depends on DEBUG).
    """
    policy = _cookie_policy(settings)
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        max_age=tokens.access_expires_in,
        **policy,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        max_age=tokens.refresh_expires_in,
        **policy,
    )


def clear_session_cookies(response, settings: Settings) -> None:
    """Expire both credential cookies. Attributes must match the ones used to set them."""
    policy = _cookie_policy(settings)
    response.delete_cookie(ACCESS_COOKIE, **policy)
    response.delete_cookie(REFRESH_COOKIE, **policy)
