"""
tests/test_sessions.py -- Unit tests for SessionStore.

Each test gets a fresh SQLite file under tmp_path.

Covers:
  - create / get / get_by_fingerprint round trip
  - rotate(): revokes the old row and inserts the successor atomically
  - rotate() of an already-revoked session writes nothing
  - a failed successor insert rolls back the revoke of the old row
  - revoke() is idempotent
  - revoke_all_for_user() / revoke_family() scope
  - list_active() filters revoked and expired rows
  - purge_expired() deletes only rows expired before the cutoff
"""

from __future__ import annotations

import inspect
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Session
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import Settings

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = SessionStore(f"sqlite:///{tmp_path / 'sessions.db'}")
    yield s
    s.close()


def _session(user_id: int = 1, *, family_id: str | None = None, rotated_from: str | None = None, ttl: int = 3600):
    sid = str(uuid.uuid4())
    return Session(
        id=sid,
        user_id=user_id,
        family_id=family_id or sid,
        refresh_token_hash=uuid.uuid4().hex + uuid.uuid4().hex,
        issued_at=NOW,
        expires_at=NOW + timedelta(seconds=ttl),
        rotated_from=rotated_from,
    )


class TestReads:
    def test_create_and_get(self, store: SessionStore) -> None:
        s = _session()
        store.create(s)
        loaded = store.get(s.id)
        assert loaded == s
        assert loaded.issued_at.tzinfo is not None

    def test_get_by_fingerprint(self, store: SessionStore) -> None:
        s = store.create(_session())
        assert store.get_by_fingerprint(s.refresh_token_hash).id == s.id
        assert store.get_by_fingerprint("0" * 64) is None

    def test_get_missing(self, store: SessionStore) -> None:
        assert store.get("nope") is None


class TestRotate:
    def test_rotate_revokes_old_and_creates_successor(self, store: SessionStore) -> None:
        old = store.create(_session())
        new = _session(family_id=old.family_id, rotated_from=old.id)

        assert store.rotate(old.id, old.user_id, new) is True

        assert store.get(old.id).revoked is True
        assert store.get(old.id).revoked_at is not None
        assert store.get(new.id).revoked is False
        assert store.has_successor(old.id) is True
        assert {s.id for s in store.list_family(old.family_id)} == {old.id, new.id}

    def test_rotate_revoked_session_writes_nothing(self, store: SessionStore) -> None:
        old = store.create(_session())
        store.revoke(old.id)
        new = _session(family_id=old.family_id, rotated_from=old.id)

        assert store.rotate(old.id, old.user_id, new) is False
        assert store.get(new.id) is None
        assert store.has_successor(old.id) is False

    def test_second_rotation_of_same_session_fails(self, store: SessionStore) -> None:
        old = store.create(_session())
        first = _session(family_id=old.family_id, rotated_from=old.id)
        second = _session(family_id=old.family_id, rotated_from=old.id)
        assert store.rotate(old.id, old.user_id, first) is True
        assert store.rotate(old.id, old.user_id, second) is False
        assert store.get(second.id) is None

    def test_failed_successor_insert_keeps_old_session_live(self, store: SessionStore) -> None:
        old = store.create(_session())
        clash = replace(
            _session(family_id=old.family_id, rotated_from=old.id),
            refresh_token_hash=old.refresh_token_hash,
        )

        with pytest.raises(IntegrityError):
            store.rotate(old.id, old.user_id, clash)

        assert store.get(old.id).revoked is False
        assert store.get(clash.id) is None
        assert store.has_successor(old.id) is False


class TestRevoke:
    def test_revoke_is_idempotent(self, store: SessionStore) -> None:
        s = store.create(_session())
        assert store.revoke(s.id) is True
        assert store.revoke(s.id) is False
        assert store.revoke("missing") is False
        assert store.get(s.id).revoked is True

    def test_revoke_all_for_user_only_touches_that_user(self, store: SessionStore) -> None:
        mine = [store.create(_session(user_id=1)) for _ in range(3)]
        other = store.create(_session(user_id=2))
        store.revoke(mine[0].id)

        assert store.revoke_all_for_user(1) == 2
        assert all(store.get(s.id).revoked for s in mine)
        assert store.get(other.id).revoked is False

    def test_revoke_family(self, store: SessionStore) -> None:
        root = store.create(_session())
        child = _session(family_id=root.family_id, rotated_from=root.id)
        store.rotate(root.id, root.user_id, child)
        unrelated = store.create(_session())

        assert store.revoke_family(root.family_id) == 1  # root was already revoked by rotation
        assert store.get(child.id).revoked is True
        assert store.get(unrelated.id).revoked is False


class TestListingAndPurge:
    def test_list_active_filters_revoked_and_expired(self, store: SessionStore) -> None:
        live = store.create(_session(ttl=3600))
        revoked = store.create(_session())
        store.revoke(revoked.id)
        store.create(_session(ttl=-60))

        active = store.list_active(1, now=NOW)
        assert [s.id for s in active] == [live.id]
        assert len(store.list_for_user(1)) == 3

    def test_purge_expired(self, store: SessionStore) -> None:
        old = store.create(_session(ttl=-7200))
        recent = store.create(_session(ttl=-60))
        live = store.create(_session(ttl=3600))

        assert store.purge_expired(NOW - timedelta(seconds=3600)) == 1
        assert store.get(old.id) is None
        assert store.get(recent.id) is not None
        assert store.get(live.id) is not None


def test_stores_default_to_configured_database() -> None:
    default_url = Settings.model_fields["database_url"].default
    assert inspect.signature(SessionStore).parameters["db_url"].default == default_url
    assert inspect.signature(UserStore).parameters["db_url"].default == default_url
