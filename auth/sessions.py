"""
auth/sessions.py -- Session Manager: durable server-side sessions.

Row layout (table "sessions"):
  sid         HMAC-SHA256 of the raw session token (see auth/tokens.py)
  sess        JSON payload, at minimum {"user_id": <int>}
  user_id     duplicated out of the payload so all sessions of one user can
              be destroyed when the account is deactivated
  created_at  epoch seconds; anchors the hard lifetime cap
  expire      epoch seconds; the sliding expiry

Expiry rules:
  - load() within the window pushes expire to now + ttl, but never past
    created_at + max_lifetime.
  - load() at or after expire deletes the row and reports EXPIRED. The row is
    gone afterwards, so a second load() reports NOT_FOUND. An expired session
    is never revived.

Every storage error is logged and re-raised as SessionStoreFailure, which the
API maps to a generic 500.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import SessionStoreFailure
from auth.tokens import generate_session_token, hash_session_token

logger = logging.getLogger("projectpulse.auth.sessions")

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("sid", String(64), primary_key=True),
    Column("sess", Text, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expire", Float, nullable=False),
)

Index("ix_sessions_expire", _sessions.c.expire)
Index("ix_sessions_user_id", _sessions.c.user_id)


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SessionLookup:
    """Result of SessionStore.load(). user_id and the expiry fields are set only
    when state is ACTIVE; remaining_seconds is expires_at minus the load time."""

    state: SessionState
    user_id: int | None = None
    expires_at: float | None = None
    remaining_seconds: float | None = None


class SessionStore:
    """Create, load, refresh and destroy sessions in the relational store.

    Usage:
        sessions = SessionStore(engine, secret_key, ttl_seconds=86400)
        token = sessions.create(user_id=42)      # raw token -> cookie
        lookup = sessions.load(token)            # SessionLookup
        sessions.destroy(token)
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        ttl_seconds: int = 24 * 60 * 60,
        max_lifetime_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self.max_lifetime_seconds = max_lifetime_seconds
        self._clock = clock
        _metadata.create_all(self.engine)

    def _sid(self, token: str) -> str:
        return hash_session_token(token, self._secret_key)

    def create(self, user_id: int) -> str:
        """Persist a new session for user_id and return the raw token."""
        token = generate_session_token()
        now = self._clock()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _sessions.insert().values(
                        sid=self._sid(token),
                        sess=json.dumps({"user_id": user_id}),
                        user_id=user_id,
                        created_at=now,
                        expire=now + self.ttl_seconds,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to create session for user_id=%s", user_id)
            raise SessionStoreFailure("session create failed") from exc
        return token

    def load(self, token: str) -> SessionLookup:
        """Resolve a raw token to its user, sliding the expiry forward on success."""
        sid = self._sid(token)
        now = self._clock()
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_sessions.select().where(_sessions.c.sid == sid)).fetchone()
                if row is None:
                    return SessionLookup(SessionState.NOT_FOUND)
                if row.expire <= now:
                    conn.execute(_sessions.delete().where(_sessions.c.sid == sid))
                    conn.commit()
                    return SessionLookup(SessionState.EXPIRED)
                new_expire = min(now + self.ttl_seconds, row.created_at + self.max_lifetime_seconds)
                if new_expire > row.expire:
                    conn.execute(_sessions.update().where(_sessions.c.sid == sid).values(expire=new_expire))
                    conn.commit()
                else:
                    new_expire = row.expire
                payload = json.loads(row.sess)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load session")
            raise SessionStoreFailure("session load failed") from exc
        return SessionLookup(
            SessionState.ACTIVE,
            user_id=int(payload["user_id"]),
            expires_at=new_expire,
            remaining_seconds=new_expire - now,
        )

    def destroy(self, token: str) -> None:
        """Delete the session. Destroying an unknown token is a no-op."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_sessions.delete().where(_sessions.c.sid == self._sid(token)))
                conn.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to destroy session")
            raise SessionStoreFailure("session destroy failed") from exc

    def destroy_for_user(self, user_id: int, keep_token: str | None = None) -> int:
        """Delete every session belonging to user_id except keep_token's.

        Returns the number removed.
        """
        stmt = _sessions.delete().where(_sessions.c.user_id == user_id)
        if keep_token:
            stmt = stmt.where(_sessions.c.sid != self._sid(keep_token))
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                conn.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to destroy sessions for user_id=%s", user_id)
            raise SessionStoreFailure("session destroy failed") from exc
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete every expired row. Returns the number removed."""
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_sessions.delete().where(_sessions.c.expire <= self._clock()))
                conn.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to purge expired sessions")
            raise SessionStoreFailure("session purge failed") from exc
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount
