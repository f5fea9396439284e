"""
auth/models.py -- Domain dataclasses for session entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the session manager do the work.

Layer rule: no imports from api/, presence/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Fingerprint:
    """The device a refresh token was issued to.

    Built once at the HTTP boundary from the resolved client address and the
    User-Agent header. Compared verbatim on every rotation: any drift in either
    field is treated as a theft signal.
    """

    source_address: str
    user_agent: str


@dataclass
class RefreshToken:
    """A persisted renewable credential.

    token is the signed JWT itself (UNIQUE in the store). ip / user_agent are
    the fingerprint captured when the token was minted. expires_at mirrors the
    JWT exp claim (Unix seconds) so the purge sweep can run in SQL.
    """

    user_id: str
    token: str
    ip: str
    user_agent: str
    expires_at: int
    id: int | None = None
    created_at: str | None = None

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(source_address=self.ip, user_agent=self.user_agent)


@dataclass(frozen=True)
class SessionTokens:
    """A freshly minted credential pair. Only ever returned whole."""

    user_id: str
    access_token: str
    refresh_token: str
    access_expires_in: int  # seconds
    refresh_expires_in: int  # seconds
