"""
auth/sessions.py -- SessionStore: persistent refresh-token sessions.

Pattern: Repository + Data Mapper, same as auth/store.py.

A session row is one refresh-token lifetime. Rotation revokes the row and
inserts a successor (rotated_from -> old id, same family_id). The raw refresh
token is never stored, only its HMAC fingerprint.

Concurrency:
  rotate() is a single transaction: "UPDATE ... SET revoked=1 WHERE id=:old
  AND revoked=0" followed by the INSERT of the successor. If the UPDATE
  touches no row the transaction is rolled back and rotate() returns False,
  so of two concurrent refreshes of the same token exactly one commits, and
  an interrupted rotation never leaves the old row revoked without a
  successor.

  rotate() and revoke_all_for_user() both start by locking the user's
  session rows (SELECT ... FOR UPDATE; a no-op on SQLite, where the database
  write lock already serializes them). Whichever commits second sees the
  first one's result: a sweep that runs after a rotation also revokes the
  new row; a rotation that runs after a sweep finds its row revoked and
  fails. Writers in this process are additionally serialized by a lock
  because SQLite allows a single writer and shared-cache in-memory databases
  fail fast instead of waiting.

Timestamps are stored as UTC ISO-8601 strings with microseconds so string
order equals time order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, select
from sqlalchemy.engine import Engine

from auth.models import Session
from auth.store import make_engine
from core.config import DEFAULT_DB_URL

logger = logging.getLogger("authguard.sessions")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("family_id", String(36), nullable=False),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("issued_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("rotated_from", String(36)),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Index("idx_sessions_user_id", "user_id"),
    Index("idx_sessions_family_id", "family_id"),
    Index("idx_sessions_rotated_from", "rotated_from"),
)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Repository for Session rows.

    Usage:
        sessions = SessionStore("sqlite:///:memory:")
        sessions.create(session)
        current = sessions.get_by_fingerprint(fingerprint)
        sessions.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_fingerprint(self, refresh_token_hash: str) -> Session | None:
        """Look up a session by the HMAC of its refresh token. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.refresh_token_hash == refresh_token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def has_successor(self, session_id: str) -> bool:
        """Return True if a rotation has already replaced this session."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_sessions.c.id).where(_sessions.c.rotated_from == session_id).limit(1)
            ).fetchone()
        return row is not None

    def list_active(self, user_id: int, now: datetime | None = None) -> list[Session]:
        """Return the user's unrevoked, unexpired sessions, newest first."""
        now = now or _utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.expires_at > _iso(now))
                )
                .order_by(_sessions.c.issued_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_for_user(self, user_id: int) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.issued_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_family(self, family_id: str) -> list[Session]:
        """Return every session in a rotation chain, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.family_id == family_id).order_by(_sessions.c.issued_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, session: Session) -> Session:
        with self._write_lock, self.engine.begin() as conn:
            conn.execute(_sessions.insert().values(**_session_to_values(session)))
        return session

    def rotate(self, old_session_id: str, user_id: int, successor: Session) -> bool:
        """Atomically revoke old_session_id and insert its successor.

        Returns False (and writes nothing) if the old session was already
        revoked by the time the conditional update ran.
        """
        # Leaving the block without commit() (early return or exception)
        # rolls the whole transaction back.
        with self._write_lock, self.engine.connect() as conn:
            _lock_user_sessions(conn, user_id)
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == old_session_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(_utcnow()))
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(_sessions.insert().values(**_session_to_values(successor)))
            conn.commit()
        return True

    def revoke(self, session_id: str) -> bool:
        """Revoke one session. Idempotent: returns False if it was already revoked or absent."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(_utcnow()))
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every unrevoked session of a user. Returns the number of rows revoked."""
        with self._write_lock, self.engine.begin() as conn:
            _lock_user_sessions(conn, user_id)
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(_utcnow()))
            )
        return result.rowcount

    def revoke_family(self, family_id: str) -> int:
        """Revoke every unrevoked session descending from the same login."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.family_id == family_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(_utcnow()))
            )
        return result.rowcount

    def purge_expired(self, before: datetime) -> int:
        """Delete sessions that expired before the given instant. Returns rows removed."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _iso(before)))
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _lock_user_sessions(conn, user_id: int) -> None:
    # FOR UPDATE is dropped by the SQLite dialect; on server databases it
    # orders this transaction against any other rotate/sweep for the user.
    conn.execute(select(_sessions.c.id).where(_sessions.c.user_id == user_id).with_for_update()).fetchall()


def _session_to_values(session: Session) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "family_id": session.family_id,
        "refresh_token_hash": session.refresh_token_hash,
        "issued_at": _iso(session.issued_at),
        "expires_at": _iso(session.expires_at),
        "rotated_from": session.rotated_from,
        "revoked": 1 if session.revoked else 0,
        "revoked_at": _iso(session.revoked_at) if session.revoked_at else None,
    }


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        family_id=row.family_id,
        refresh_token_hash=row.refresh_token_hash,
        issued_at=datetime.fromisoformat(row.issued_at),
        expires_at=datetime.fromisoformat(row.expires_at),
        rotated_from=row.rotated_from,
        revoked=bool(row.revoked),
        revoked_at=datetime.fromisoformat(row.revoked_at) if row.revoked_at else None,
    )
