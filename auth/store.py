"""
auth/store.py -- SQLAlchemy Core persistence layer for refresh tokens.

Pattern: Repository + Data Mapper. SessionStore is the repository;
_row_to_refresh_token is the mapper. SessionManager never touches SQL.

Atomicity:
  consume() is the rotation primitive. It selects the (user_id, token) record
  and deletes it by id inside one transaction, and only reports success when
  the DELETE affected exactly one row. Two callers presenting the same token
  both may SELECT the row, but SQLite serializes the writes: the second DELETE
  runs after the first commits and affects zero rows, so it returns None.

  UNIQUE(token) is the "at most one live record per value" invariant.

Errors:
  Every SQLAlchemyError is re-raised as SessionStoreError so callers depend on
  one exception type regardless of backend. The SQLite busy timeout
  (STORE_TIMEOUT_SECONDS) bounds how long any call waits on a lock.

Layer rule: no imports from api/, presence/, or core/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import SessionStoreError
from auth.models import RefreshToken

logger = logging.getLogger("chatgate.store")

_DEFAULT_DB_URL = "sqlite:///chatgate_sessions.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("token", Text, nullable=False, unique=True),
    Column("ip", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", Integer, nullable=False, index=True),  # Unix seconds, mirrors JWT exp
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on a rotation in flight.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for RefreshToken records.

    Usage:
        store = SessionStore()
        store.create(RefreshToken(user_id="u1", token=value, ip="1.2.3.4", user_agent="ua", expires_at=exp))
        record = store.consume("u1", value)   # None if already consumed
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Open a transaction, translating driver failures into SessionStoreError."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Session store operation failed: %s", exc.__class__.__name__)
            raise SessionStoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, record: RefreshToken) -> int:
        """Insert a refresh token record and return its assigned ID."""
        with self._begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=record.user_id,
                    token=record.token,
                    ip=record.ip,
                    user_agent=record.user_agent,
                    created_at=_now_iso(),
                    expires_at=record.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def consume(self, user_id: str, token: str) -> RefreshToken | None:
        """Atomically delete the (user_id, token) record and return it.

        Returns None if no such record exists or a concurrent caller consumed
        it first. A given token is returned by at most one call, ever.
        """
        with self._begin() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token == token)
                )
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == row.id))
            if result.rowcount != 1:
                return None
        return _row_to_refresh_token(row)

    def delete_by_token(self, token: str) -> bool:
        """Delete the record holding this token value. Returns True if one was removed."""
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: str) -> int:
        """Delete every record owned by user_id. Returns the number removed."""
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self, now: int | None = None) -> int:
        """Delete all records whose expires_at has passed. Returns number of rows removed."""
        cutoff = int(time.time()) if now is None else now
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> list[RefreshToken]:
        """Return all records for a user, newest first."""
        with self._begin() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self._begin() as conn:
                conn.execute(select(1))
        except SessionStoreError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        ip=row.ip,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
