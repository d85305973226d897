"""
tests/conftest.py -- Shared test fixtures for ProjectPulse Auth tests.

This module provides:
  - FakeDirectory: a scripted stand-in for DirectoryClient
  - make_service: builds an AuthService over an isolated in-memory DB
  - create_user: inserts a local user with a known password
  - api: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Each test gets its own name, so no state leaks between tests.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LDAP_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

import auth.passwords
from api.limiter import limiter
from api.main import app
from auth.directory import DirectoryMatch, DirectoryNoMatch, DirectoryResult, DirectoryUnavailable
from auth.models import DirectoryUser, Role, User, UserStatus
from auth.passwords import hash_password
from auth.provisioning import AccountProvisioner
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore, create_db_engine
from core.config import get_settings

# ---------------------------------------------------------------------------
# Scripted directory
# ---------------------------------------------------------------------------


@dataclass
class FakeDirectory:
    """In-process directory: {username: (password, DirectoryUser)}.

    Set available=False to simulate an unreachable server. Every bind() call
    is recorded in calls.
    """

    entries: dict[str, tuple[str, DirectoryUser]] = field(default_factory=dict)
    available: bool = True
    calls: list[str] = field(default_factory=list)

    def add(self, username: str, password: str, email: str | None = None, display_name: str = "LDAP User") -> None:
        self.entries[username] = (
            password,
            DirectoryUser(
                username=username,
                email=email or f"{username}@example.com",
                display_name=display_name,
                dn=f"uid={username},ou=users,dc=example,dc=com",
            ),
        )

    def bind(self, username: str, password: str) -> DirectoryResult:
        self.calls.append(username)
        if not self.available:
            return DirectoryUnavailable("directory unreachable", "LDAPSocketOpenError")
        entry = self.entries.get(username)
        if entry is None:
            return DirectoryNoMatch("no such entry")
        if entry[0] != password:
            return DirectoryNoMatch("bind rejected")
        return DirectoryMatch(entry[1])


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url() -> str:
    """A fresh named shared-memory SQLite URL."""
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    """Cost 4 keeps hashing fast; needs_rehash() reads the same constant."""
    monkeypatch.setattr(auth.passwords, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def db_url() -> str:
    return memory_db_url()


@pytest.fixture
def fake_directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def make_service() -> Generator[Callable[..., AuthService], None, None]:
    """Factory: make_service(directory=None, clock=None, db_url=None, **session_kwargs)."""
    built: list[AuthService] = []
    settings = get_settings()

    def _make(directory=None, clock=None, db_url=None, login_deadline_seconds=15.0, **session_kwargs) -> AuthService:
        engine = create_db_engine(db_url or memory_db_url())
        users = UserStore(engine)
        sessions = SessionStore(engine, settings.secret_key, **session_kwargs)
        provisioner = AccountProvisioner(users, hold_department_name="Hold", preferred_language="ar")
        kwargs = {"clock": clock} if clock is not None else {}
        service = AuthService(
            users,
            sessions,
            provisioner,
            directory=directory,
            login_deadline_seconds=login_deadline_seconds,
            **kwargs,
        )
        built.append(service)
        return service

    yield _make
    for service in built:
        service.close()


@pytest.fixture
def create_user() -> Callable[..., User]:
    """Factory: create_user(service, username, password, **fields) -> stored User."""

    def _create(service: AuthService, username: str, password: str = "secret123", **fields) -> User:
        user = User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            name=fields.pop("name", username.title()),
            password=hash_password(password),
            role=fields.pop("role", Role.USER),
            status=fields.pop("status", UserStatus.ACTIVE),
            **fields,
        )
        user_id = service.users.create_user(user)
        return service.users.get_by_id(user_id)

    return _create


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return a lifespan that wires the test AuthService into app.state.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task, as the production lifespan does.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    service: AuthService
    directory: FakeDirectory

    def login(self, username: str, password: str, **extra):
        return self.client.post("/api/login", json={"username": username, "password": password, **extra})


@pytest.fixture
def api(make_service, fake_directory) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext over the real app with a fake directory and a fresh DB.

    Rate limiting is switched off so repeated logins across tests are not
    throttled; test_rate_limit re-enables it explicitly.
    """
    service = make_service(directory=fake_directory)
    app.router.lifespan_context = _patch_lifespan(service)
    limiter.enabled = False
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, service=service, directory=fake_directory)
    limiter.enabled = True
