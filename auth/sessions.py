"""
auth/sessions.py -- Refresh token rotation with reuse and theft detection.

SessionManager is the only place that decides what a presented refresh token
is worth. The rules:

  1. The token must verify (signature, expiry, typ="refresh").
  2. The (subject, token) record must still exist. Consuming it is atomic in
     the store, so a token is redeemed at most once. An already rotated or
     logged-out token fails exactly like a forged one.
  3. The stored fingerprint must equal the presenting one. A mismatch deletes
     EVERY refresh token the subject holds, on every device. Any IP or
     User-Agent drift therefore forces a full re-login.
  4. Otherwise a new pair is minted with a full-length refresh TTL (no sliding
     window) bound to the current fingerprint.

Concurrency:
  Rotation (consume -> create) and revoke_all hold a per-subject lock, so a
  revocation can never interleave between the consume and the create and
  leave the freshly issued record alive after revoke_all returns.

Layer rule: no imports from api/ or presence/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from auth.errors import (
    CredentialError,
    InvalidOrExpired,
    MissingCredential,
    PersistenceUnavailable,
    SessionStoreError,
    StoreUnavailable,
    SuspiciousActivity,
)
from auth.models import Fingerprint, RefreshToken, SessionTokens
from auth.store import SessionStore
from auth.tokens import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, CredentialCodec
from core.config import Settings

logger = logging.getLogger("chatgate.sessions")


class SubjectLocks:
    """A fixed set of locks striped by subject.

    Two subjects may share a stripe; that only costs a little throughput.
    The same subject always maps to the same lock.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(stripes)]

    @contextmanager
    def hold(self, subject: str) -> Iterator[None]:
        lock = self._locks[hash(subject) % len(self._locks)]
        with lock:
            yield


class SessionManager:
    """Issues, rotates and revokes refresh-token sessions.

    Usage:
        manager = SessionManager(store, CredentialCodec(secret))
        tokens = manager.issue_session("u1", Fingerprint("1.2.3.4", "Mozilla/5.0"))
        tokens = manager.rotate_session(tokens.refresh_token, fingerprint)
    """

    def __init__(
        self,
        store: SessionStore,
        codec: CredentialCodec,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        locks: SubjectLocks | None = None,
    ) -> None:
        self._store = store
        self._codec = codec
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._locks = locks or SubjectLocks()

    @classmethod
    def from_settings(cls, store: SessionStore, settings: Settings) -> SessionManager:
        return cls(
            store,
            CredentialCodec(settings.secret_key),
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        )

    @property
    def codec(self) -> CredentialCodec:
        return self._codec

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def issue_session(self, user_id: str, fingerprint: Fingerprint) -> SessionTokens:
        """Mint a fresh pair for user_id and persist the refresh token.

        Called by the login flow once the password has been verified.
        """
        if not user_id:
            raise ValueError("user_id is required")
        try:
            tokens = self._mint(user_id, fingerprint)
        except SessionStoreError as exc:
            raise StoreUnavailable() from exc
        logger.info("Session issued for user %s from %s", user_id, fingerprint.source_address)
        return tokens

    def rotate_session(self, presented: str | None, fingerprint: Fingerprint) -> SessionTokens:
        """Exchange a refresh token for a new pair, consuming the old one.

        Raises MissingCredential, InvalidOrExpired, SuspiciousActivity or
        PersistenceUnavailable. Nothing is returned unless both new
        credentials were minted and the new refresh token persisted.
        """
        if not presented:
            raise MissingCredential()

        try:
            payload = self._codec.verify(presented, token_type=REFRESH_TOKEN_TYPE)
        except CredentialError as exc:
            logger.info("Rejected refresh token: %s", exc)
            raise InvalidOrExpired() from exc
        user_id = str(payload["sub"])

        try:
            with self._locks.hold(user_id):
                record = self._store.consume(user_id, presented)
                if record is None:
                    logger.info("Refresh token for user %s is not live (reused or revoked)", user_id)
                    raise InvalidOrExpired()

                if record.fingerprint != fingerprint:
                    revoked = self._store.delete_all_for_user(user_id)
                    logger.warning(
                        "Fingerprint mismatch for user %s: issued to %s (%r), presented by %s (%r); revoked %d sessions",
                        user_id,
                        record.ip,
                        record.user_agent,
                        fingerprint.source_address,
                        fingerprint.user_agent,
                        revoked + 1,
                    )
                    raise SuspiciousActivity()

                tokens = self._mint(user_id, fingerprint)
        except SessionStoreError as exc:
            raise PersistenceUnavailable() from exc

        logger.info("Session rotated for user %s", user_id)
        return tokens

    def logout(self, refresh_token: str | None) -> bool:
        """Delete the record holding refresh_token, if any.

        Never raises: an absent, already deleted, or unreadable token is still a
        successful logout. Returns True only if a record was actually removed.
        """
        if not refresh_token:
            return False
        try:
            removed = self._store.delete_by_token(refresh_token)
        except SessionStoreError:
            logger.warning("Logout could not reach the session store; cookies cleared anyway")
            return False
        if removed:
            logger.info("Session logged out")
        return removed

    def revoke_all(self, user_id: str) -> int:
        """Delete every refresh token user_id holds. Returns the number removed."""
        try:
            with self._locks.hold(user_id):
                revoked = self._store.delete_all_for_user(user_id)
        except SessionStoreError as exc:
            raise StoreUnavailable() from exc
        logger.warning("Revoked %d sessions for user %s", revoked, user_id)
        return revoked

    def list_sessions(self, user_id: str) -> list[RefreshToken]:
        try:
            return self._store.list_for_user(user_id)
        except SessionStoreError as exc:
            raise StoreUnavailable() from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mint(self, user_id: str, fingerprint: Fingerprint) -> SessionTokens:
        access_token = self._codec.sign({"sub": user_id, "typ": ACCESS_TOKEN_TYPE}, self._access_ttl)
        refresh_token = self._codec.sign({"sub": user_id, "typ": REFRESH_TOKEN_TYPE}, self._refresh_ttl)
        expires_at = int((self._codec.now() + self._refresh_ttl).timestamp())
        self._store.create(
            RefreshToken(
                user_id=user_id,
                token=refresh_token,
                ip=fingerprint.source_address,
                user_agent=fingerprint.user_agent,
                expires_at=expires_at,
            )
        )
        return SessionTokens(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_in=int(self._access_ttl.total_seconds()),
            refresh_expires_in=int(self._refresh_ttl.total_seconds()),
        )
