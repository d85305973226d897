"""
tests/test_sessions.py -- Unit tests for auth/sessions.py.

A mutable fake clock drives expiry so no test sleeps.

Covers:
  - create/load round trip; raw token is never the stored key
  - sliding expiry on access, capped by the absolute lifetime
  - expired session reports EXPIRED once, then NOT_FOUND
  - destroy, destroy_for_user, purge_expired
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from auth.sessions import SessionState, SessionStore
from auth.store import create_db_engine

TTL = 100
CAP = 250


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock, db_url: str) -> SessionStore:
    engine = create_db_engine(db_url)
    yield SessionStore(engine, "k" * 32, ttl_seconds=TTL, max_lifetime_seconds=CAP, clock=clock)
    engine.dispose()


class TestCreateAndLoad:
    def test_round_trip(self, store: SessionStore) -> None:
        token = store.create(user_id=7)
        lookup = store.load(token)
        assert lookup.state is SessionState.ACTIVE
        assert lookup.user_id == 7

    def test_unknown_token_not_found(self, store: SessionStore) -> None:
        assert store.load("nope").state is SessionState.NOT_FOUND

    def test_raw_token_is_not_stored(self, store: SessionStore) -> None:
        token = store.create(user_id=1)
        with store.engine.connect() as conn:
            sids = [row[0] for row in conn.execute(text("SELECT sid FROM sessions"))]
        assert token not in sids
        assert len(sids) == 1

    def test_tokens_are_unique(self, store: SessionStore) -> None:
        assert store.create(1) != store.create(1)


class TestExpiry:
    def test_access_slides_expiry(self, store: SessionStore, clock: FakeClock) -> None:
        token = store.create(user_id=1)
        clock.now += 80
        lookup = store.load(token)
        assert lookup.expires_at == clock.now + TTL
        assert lookup.remaining_seconds == TTL
        clock.now += 80  # 160s after creation, but only 80s after last access
        assert store.load(token).state is SessionState.ACTIVE

    def test_idle_session_expires(self, store: SessionStore, clock: FakeClock) -> None:
        token = store.create(user_id=1)
        clock.now += TTL
        assert store.load(token).state is SessionState.EXPIRED

    def test_expired_row_is_removed(self, store: SessionStore, clock: FakeClock) -> None:
        token = store.create(user_id=1)
        clock.now += TTL + 1
        store.load(token)
        assert store.load(token).state is SessionState.NOT_FOUND

    def test_absolute_lifetime_caps_sliding(self, store: SessionStore, clock: FakeClock) -> None:
        token = store.create(user_id=1)
        created = clock.now
        for _ in range(4):
            clock.now += 60
            lookup = store.load(token)
        assert lookup.expires_at == created + CAP
        assert lookup.remaining_seconds == created + CAP - clock.now
        clock.now = created + CAP
        assert store.load(token).state is SessionState.EXPIRED


class TestDestroy:
    def test_destroy(self, store: SessionStore) -> None:
        token = store.create(user_id=1)
        store.destroy(token)
        assert store.load(token).state is SessionState.NOT_FOUND

    def test_destroy_unknown_is_noop(self, store: SessionStore) -> None:
        store.destroy("never-issued")

    def test_destroy_for_user(self, store: SessionStore) -> None:
        a, b = store.create(1), store.create(1)
        other = store.create(2)
        assert store.destroy_for_user(1) == 2
        assert store.load(a).state is SessionState.NOT_FOUND
        assert store.load(b).state is SessionState.NOT_FOUND
        assert store.load(other).state is SessionState.ACTIVE

    def test_destroy_for_user_keeps_named_session(self, store: SessionStore) -> None:
        keep, drop = store.create(1), store.create(1)
        assert store.destroy_for_user(1, keep_token=keep) == 1
        assert store.load(keep).state is SessionState.ACTIVE
        assert store.load(drop).state is SessionState.NOT_FOUND

    def test_purge_expired(self, store: SessionStore, clock: FakeClock) -> None:
        store.create(1)
        clock.now += 50
        fresh = store.create(2)
        clock.now += 60  # first one is now past its TTL
        assert store.purge_expired() == 1
        assert store.load(fresh).state is SessionState.ACTIVE
