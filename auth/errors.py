"""
auth/errors.py -- Exception taxonomy for the session rotation protocol.

Credential errors come from the codec (signature and expiry checks only).
Session errors are what SessionManager raises; each carries a stable code and
the user-visible message and the HTTP status the route layer returns. Rotation
failures are 401; StoreUnavailable is 503.

Layer rule: no imports from api/, presence/, or core/.
"""

from __future__ import annotations


class CredentialError(Exception):
    """A signed value could not be accepted."""


class InvalidSignature(CredentialError):
    """Malformed token, bad signature, or wrong token type."""


class CredentialExpired(CredentialError):
    """Signature is valid but the exp claim has passed."""


class SessionStoreError(Exception):
    """The persistence collaborator failed (locked, unreachable, timed out)."""


class SessionError(Exception):
    """Base for failures surfaced at the /refresh boundary."""

    status_code = 401
    code = "session_error"
    message = "Session error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MissingCredential(SessionError):
    code = "no_refresh_token"
    message = "No refresh token"


class InvalidOrExpired(SessionError):
    """Bad signature, expired, already rotated, or logged out. No state change."""

    code = "invalid_refresh_token"
    message = "Invalid or expired refresh token"


class SuspiciousActivity(SessionError):
    """Fingerprint mismatch. Every session for the subject has already been revoked."""

    code = "suspicious_activity"
    message = "Suspicious login detected. Please login again."


class PersistenceUnavailable(SessionError):
    """The store failed mid-rotation. The client must log in again; nothing was issued."""

    code = "session_store_unavailable"
    message = "Refresh token expired, please login again"


class StoreUnavailable(SessionError):
    """The store failed while issuing, listing or revoking. Retryable; credentials are untouched."""

    status_code = 503
    code = "service_unavailable"
    message = "Session store is unavailable. Please try again."
