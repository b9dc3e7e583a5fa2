"""
auth/store.py -- SQLAlchemy Core persistence for users and permission overrides.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_overrides are the mappers. Route, guard and token code
never touches SQL directly.

Permission overrides:
  One row per user in permission_overrides, holding the granted and denied
  permission names as JSON arrays plus a version counter. The authentication
  guard reads this row on every request (no caching across requests) so an
  admin's grant or deny applies to the very next call, while access tokens
  themselves stay free of override data.

  Writes are compare-and-set on version: save_overrides() only succeeds if
  the row still carries the version the caller read. The first write for a
  user is an INSERT guarded by the primary key, so two concurrent "first"
  writes also cannot both win.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PermissionOverrides, User
from auth.permissions import Permission, Role, parse_permissions
from core.config import DEFAULT_DB_URL

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default=Role.USER.value),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", Text),
)

_overrides = Table(
    "permission_overrides",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("granted", Text, nullable=False, server_default="[]"),
    Column("denied", Text, nullable=False, server_default="[]"),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite settings every store in this package uses."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_permissions(perms) -> str:
    return json.dumps(sorted(p.value for p in perms))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and PermissionOverrides entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(username="root", role=Role.SUPERADMIN, hashed_password=...))
        overrides = store.get_overrides(uid)
        store.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, hashed_password. role may be a Role
        or its string value; is_active must be a bool.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - {"role", "is_active", "hashed_password"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Permission overrides
    # ------------------------------------------------------------------

    def get_overrides(self, user_id: int) -> PermissionOverrides:
        """Return the user's current override record (version 0 if none written)."""
        with self.engine.connect() as conn:
            row = conn.execute(_overrides.select().where(_overrides.c.user_id == user_id)).fetchone()
        if row is None:
            return PermissionOverrides(user_id=user_id)
        return _row_to_overrides(row)

    def save_overrides(
        self,
        user_id: int,
        granted: frozenset[Permission],
        denied: frozenset[Permission],
        expected_version: int,
    ) -> PermissionOverrides | None:
        """Compare-and-set the override record.

        Succeeds only if the stored version still equals expected_version.
        Returns the new record, or None if another writer got there first --
        the caller re-reads and retries.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            if expected_version == 0:
                try:
                    conn.execute(
                        _overrides.insert().values(
                            user_id=user_id,
                            granted=_dump_permissions(granted),
                            denied=_dump_permissions(denied),
                            version=1,
                            updated_at=now,
                        )
                    )
                    conn.commit()
                except IntegrityError:
                    conn.rollback()
                    return None
                new_version = 1
            else:
                result = conn.execute(
                    _overrides.update()
                    .where((_overrides.c.user_id == user_id) & (_overrides.c.version == expected_version))
                    .values(
                        granted=_dump_permissions(granted),
                        denied=_dump_permissions(denied),
                        version=expected_version + 1,
                        updated_at=now,
                    )
                )
                conn.commit()
                if result.rowcount == 0:
                    return None
                new_version = expected_version + 1
        return PermissionOverrides(
            user_id=user_id,
            granted=frozenset(granted),
            denied=frozenset(denied),
            version=new_version,
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        created_at=row.created_at,
        is_active=bool(row.is_active),
        last_login=row.last_login,
    )


def _row_to_overrides(row) -> PermissionOverrides:
    return PermissionOverrides(
        user_id=row.user_id,
        granted=parse_permissions(json.loads(row.granted or "[]")),
        denied=parse_permissions(json.loads(row.denied or "[]")),
        version=row.version,
    )
