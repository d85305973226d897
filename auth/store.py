"""
auth/store.py -- SQLAlchemy Core persistence layer for users and departments.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_department are the mappers. Route and service code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Case-insensitive identity:
  Usernames and department names are unique under lower(). The functional
  unique indexes below make "insert if absent" atomic: the loser of two
  concurrent inserts gets IntegrityError and re-reads the winner's row
  (see auth/provisioning.py). Every lookup compares lower() on both sides.

Transactions:
  Each mutating method runs in its own connection and commits once, so one
  logical operation maps to one transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Department, Role, User, UserStatus

logger = logging.getLogger("projectpulse.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_departments = Table(
    "departments",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

Index("uq_departments_name_lower", func.lower(_departments.c.name), unique=True)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("password", Text, nullable=False),  # one-way hash, never plaintext
    Column("role", String(30), nullable=False, server_default=Role.USER.value),
    Column("status", String(20), nullable=False, server_default=UserStatus.ACTIVE.value),
    Column("department_id", Integer, ForeignKey("departments.id")),
    Column("preferred_language", String(10), nullable=False, server_default="en"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("custom_permissions", Text),  # JSON object {permissionName: bool}
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

Index("uq_users_username_lower", func.lower(_users.c.username), unique=True)

# Columns update_user() accepts. Anything else is a programming error.
_UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "name",
        "password",
        "role",
        "status",
        "department_id",
        "preferred_language",
        "is_active",
        "custom_permissions",
    }
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Build the engine shared by UserStore and SessionStore."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_permissions(value: dict[str, bool] | None) -> str | None:
    return json.dumps(value, sort_keys=True) if value is not None else None


def _column_values(fields: dict) -> dict:
    """Convert domain values to their column representation."""
    values = dict(fields)
    if "role" in values:
        values["role"] = Role(values["role"]).value
    if "status" in values:
        values["status"] = UserStatus(values["status"]).value
    if "is_active" in values:
        values["is_active"] = 1 if values["is_active"] else 0
    if "custom_permissions" in values:
        values["custom_permissions"] = _dump_permissions(values["custom_permissions"])
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Department entities.

    Usage:
        store = UserStore(create_db_engine("sqlite:///pmo.db"))
        store.create_user(User(username="admin", email="a@x", name="Admin",
                               password=hash_password("secret"), role=Role.ADMINISTRATOR))
        user = store.get_by_username("ADMIN")   # case-insensitive
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists
        under case-insensitive comparison. Callers decide whether that is a
        409 (admin create) or a lost provisioning race (re-read).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    name=user.name,
                    password=user.password,
                    role=Role(user.role).value,
                    status=UserStatus(user.status).value,
                    department_id=user.department_id,
                    preferred_language=user.preferred_language,
                    is_active=1 if user.is_active else 0,
                    custom_permissions=_dump_permissions(user.custom_permissions),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username, ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(func.lower(_users.c.username))).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: see _UPDATABLE_USER_FIELDS. Unknown names raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return self.get_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**_column_values(fields)))
            conn.commit()
        return result.rowcount > 0

    def set_permissions(self, user_id: int, role: Role, custom_permissions: dict[str, bool] | None) -> bool:
        """Write role and permission overrides together in one statement."""
        return self.update_user(user_id, role=role, custom_permissions=custom_permissions)

    def count_active_admins(self) -> int:
        """Return the number of Administrators who can still log in.

        Used by the user-management routes to refuse demoting or deactivating
        the last one [M4].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(
                    (_users.c.role == Role.ADMINISTRATOR.value)
                    & (_users.c.status == UserStatus.ACTIVE.value)
                    & (_users.c.is_active == 1)
                )
            ).scalar()
        return result or 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Department queries
    # ------------------------------------------------------------------

    def create_department(self, department: Department) -> int:
        """Insert a department. Raises IntegrityError on a case-insensitive duplicate name."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _departments.insert().values(
                    name=department.name,
                    description=department.description,
                    is_active=1 if department.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_department(self, department_id: int) -> Department | None:
        with self.engine.connect() as conn:
            row = conn.execute(_departments.select().where(_departments.c.id == department_id)).fetchone()
        return _row_to_department(row) if row is not None else None

    def get_department_by_name(self, name: str) -> Department | None:
        """Look up a department by name, ignoring case."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _departments.select().where(func.lower(_departments.c.name) == name.strip().lower())
            ).fetchone()
        return _row_to_department(row) if row is not None else None

    def list_departments(self) -> list[Department]:
        with self.engine.connect() as conn:
            rows = conn.execute(_departments.select().order_by(_departments.c.name)).fetchall()
        return [_row_to_department(r) for r in rows]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    custom = json.loads(row.custom_permissions) if row.custom_permissions else None
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name,
        password=row.password,
        role=Role(row.role),
        status=UserStatus(row.status),
        department_id=row.department_id,
        preferred_language=row.preferred_language,
        is_active=bool(row.is_active),
        custom_permissions=custom,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_department(row) -> Department:
    return Department(
        id=row.id,
        name=row.name,
        description=row.description,
        is_active=bool(row.is_active),
    )
