"""
auth/service.py -- AuthService: the login orchestrator and the owner of all
auth state.

One AuthService is built at process start (AuthService.from_settings) and
injected everywhere through app.state. It owns the engine, the user and
session stores, the directory client and the provisioner; there are no
module-level connections or strategy registries.

Login state machine (strictly sequential; the directory attempt finishes
before the local attempt starts):

    Start
      -> DirectoryAttempt                      (skipped for strategy=local)
           Match        -> existing user, or provision one -> Establish
           NoMatch      -> LocalAttempt        (strategy=directory: fail)
           Unavailable  -> LocalAttempt        (strategy=directory: unavailable)
      -> LocalAttempt                          (skipped for strategy=directory)
           password ok and account Active -> Establish
           otherwise                      -> failure
      -> Establish: re-check deadline, upgrade a stale local hash, stamp
                    last_login, create session

login() returns exactly one LoginOutcome. The route turns that one value
into one HTTP response, so there is no path that can answer twice.

The overall deadline (LOGIN_DEADLINE_SECONDS) is checked before the local
attempt, before a directory identity is provisioned, and again before
anything in Establish is written. A login that runs out of time is denied
and leaves no session, no new user row and no last_login stamp.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from auth.directory import (
    DirectoryClient,
    DirectoryConfig,
    DirectoryMatch,
    DirectoryNoMatch,
    DirectoryUnavailable,
)
from auth.errors import AccountInactive, InvalidCredentials
from auth.models import DirectoryUser, Role, User, UserStatus
from auth.passwords import DUMMY_HASH, hash_password, needs_rehash, verify_password
from auth.permissions import PermissionSet, parse_overrides, resolve
from auth.provisioning import AccountProvisioner
from auth.sessions import SessionState, SessionStore
from auth.store import UserStore, create_db_engine
from core.config import Settings

logger = logging.getLogger("projectpulse.auth")


class LoginStrategy(str, Enum):
    AUTO = "auto"  # directory first, local fallback
    LOCAL = "local"
    DIRECTORY = "directory"


class LoginStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    TIMED_OUT = "timed_out"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class LoginOutcome:
    """The single terminal value of one login attempt."""

    status: LoginStatus
    user: User | None = None
    session_token: str | None = None
    method: str | None = None  # "directory" or "local" on success

    @property
    def ok(self) -> bool:
        return self.status is LoginStatus.SUCCESS


@dataclass(frozen=True)
class ActiveSession:
    """A resolved session: its user and the seconds left before it expires."""

    user: User
    remaining_seconds: float


class _LoginAborted(Exception):
    """Ends the state machine early with a non-credential terminal status."""

    def __init__(self, status: LoginStatus) -> None:
        super().__init__(status.value)
        self.status = status


def can_authenticate(user: User) -> bool:
    """Only Active accounts with the active flag set may log in or keep a session."""
    return user.status is UserStatus.ACTIVE and user.is_active


class AuthService:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        provisioner: AccountProvisioner,
        directory: DirectoryClient | None = None,
        login_deadline_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.provisioner = provisioner
        self.directory = directory
        self.login_deadline_seconds = login_deadline_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, directory: DirectoryClient | None = None) -> AuthService:
        """Build the service and its stores from configuration.

        Pass directory to substitute a scripted client (tests); otherwise a
        real DirectoryClient is created when LDAP_ENABLED is on.
        """
        engine = create_db_engine(settings.database_url)
        users = UserStore(engine)
        sessions = SessionStore(
            engine,
            settings.secret_key,
            ttl_seconds=settings.session_ttl_seconds,
            max_lifetime_seconds=settings.session_max_lifetime_seconds,
        )
        provisioner = AccountProvisioner(
            users,
            hold_department_name=settings.hold_department_name,
            preferred_language=settings.provisioned_language,
        )
        if directory is None and settings.ldap_enabled:
            directory = DirectoryClient(DirectoryConfig.from_settings(settings))
        return cls(
            users,
            sessions,
            provisioner,
            directory=directory,
            login_deadline_seconds=settings.login_deadline_seconds,
        )

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, strategy: LoginStrategy = LoginStrategy.AUTO) -> LoginOutcome:
        """Run the login state machine and return its one terminal outcome."""
        deadline = self._clock() + self.login_deadline_seconds
        username = (username or "").strip()
        if not username or not password:
            return LoginOutcome(LoginStatus.INVALID_CREDENTIALS)

        try:
            user, method = self._authenticate(username, password, strategy, deadline)
            self._check_deadline(deadline, username, "session creation")
        except InvalidCredentials:
            logger.info("Login failed for %r (strategy=%s)", username, strategy.value)
            return LoginOutcome(LoginStatus.INVALID_CREDENTIALS)
        except AccountInactive:
            logger.info("Login refused for inactive account %r", username)
            return LoginOutcome(LoginStatus.ACCOUNT_INACTIVE)
        except _LoginAborted as exc:
            return LoginOutcome(exc.status)

        if method == "local" and needs_rehash(user.password):
            self.users.update_user(user.id, password=hash_password(password))
            logger.info("Upgraded password hash for user_id=%s", user.id)
        self.users.update_last_login(user.id)
        token = self.sessions.create(user.id)
        logger.info("Login succeeded for %r via %s (user_id=%s)", user.username, method, user.id)
        refreshed = self.users.get_by_id(user.id) or user
        return LoginOutcome(LoginStatus.SUCCESS, user=refreshed, session_token=token, method=method)

    def _check_deadline(self, deadline: float, username: str, step: str) -> None:
        if self._clock() >= deadline:
            logger.warning("Login for %r exceeded the deadline before %s", username, step)
            raise _LoginAborted(LoginStatus.TIMED_OUT)

    def _authenticate(self, username: str, password: str, strategy: LoginStrategy, deadline: float) -> tuple[User, str]:
        """Return (user, method) or raise InvalidCredentials / AccountInactive / _LoginAborted."""
        if strategy is not LoginStrategy.LOCAL:
            if self.directory is None:
                if strategy is LoginStrategy.DIRECTORY:
                    logger.warning("Directory-only login requested but the directory is disabled")
                    raise _LoginAborted(LoginStatus.SERVICE_UNAVAILABLE)
            else:
                result = self.directory.bind(username, password)
                if isinstance(result, DirectoryMatch):
                    self._check_deadline(deadline, username, "provisioning")
                    user = self._user_for_directory_identity(result.user)
                    if not can_authenticate(user):
                        raise AccountInactive(user.username)
                    return user, "directory"
                if isinstance(result, DirectoryUnavailable):
                    logger.warning("Directory unavailable (%s)", result.cause)
                    if strategy is LoginStrategy.DIRECTORY:
                        raise _LoginAborted(LoginStatus.SERVICE_UNAVAILABLE)
                elif isinstance(result, DirectoryNoMatch):
                    logger.debug("Directory did not match %r (%s)", username, result.reason)
                    if strategy is LoginStrategy.DIRECTORY:
                        raise InvalidCredentials(username)

        self._check_deadline(deadline, username, "the local attempt")
        return self._local_attempt(username, password), "local"

    def _user_for_directory_identity(self, directory_user: DirectoryUser) -> User:
        existing = self.users.get_by_username(directory_user.username)
        if existing is not None:
            return existing
        return self.provisioner.provision_from_directory(directory_user)

    def _local_attempt(self, username: str, password: str) -> User:
        user = self.users.get_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return before running a hash check [C1]
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials(username)
        if not verify_password(password, user.password):
            raise InvalidCredentials(username)
        if not can_authenticate(user):
            raise AccountInactive(username)
        return user

    def logout(self, token: str | None) -> None:
        if token:
            self.sessions.destroy(token)

    # ------------------------------------------------------------------
    # Session resolution
    # ------------------------------------------------------------------

    def resume_session(self, token: str | None) -> ActiveSession | None:
        """Resolve a session token to a user who is still allowed to log in.

        Loading slides the session expiry; remaining_seconds reflects the new
        expiry so the caller can refresh the cookie to match. A session whose
        user has been deactivated or deleted is destroyed here, so an inactive
        account cannot keep using a session it obtained earlier.
        """
        if not token:
            return None
        lookup = self.sessions.load(token)
        if lookup.state is not SessionState.ACTIVE:
            return None
        user = self.users.get_by_id(lookup.user_id)
        if user is None or not can_authenticate(user):
            self.sessions.destroy(token)
            return None
        return ActiveSession(user, lookup.remaining_seconds)

    def current_user(self, token: str | None) -> User | None:
        session = self.resume_session(token)
        return session.user if session is not None else None

    def change_password(self, user_id: int, new_password: str, keep_token: str | None = None) -> int:
        """Store a new password hash and end the user's other sessions.

        keep_token names the caller's own session, which survives. Returns the
        number of sessions destroyed.
        """
        self.users.update_user(user_id, password=hash_password(new_password))
        removed = self.sessions.destroy_for_user(user_id, keep_token=keep_token)
        logger.info("Password changed for user_id=%s; %d other sessions destroyed", user_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def effective_permissions(self, user: User) -> PermissionSet:
        return resolve(user)

    def update_permissions(
        self, user_id: int, role: Role, custom_permissions: Mapping[str, object] | None
    ) -> User | None:
        """Replace role and overrides for user_id. Returns the updated user or None.

        Raises ValueError for unknown permission names or non-boolean values.
        """
        overrides = parse_overrides(custom_permissions) if custom_permissions is not None else None
        stored = {p.value: allowed for p, allowed in overrides.items()} if overrides is not None else None
        if not self.users.set_permissions(user_id, role, stored):
            return None
        logger.info("Permissions updated for user_id=%s (role=%s, overrides=%s)", user_id, Role(role).value, stored)
        return self.users.get_by_id(user_id)

    def update_role(self, user_id: int, role: Role) -> User | None:
        """Change only the role, leaving stored overrides as they are."""
        if not self.users.update_user(user_id, role=role):
            return None
        logger.info("Role updated for user_id=%s (role=%s)", user_id, Role(role).value)
        return self.users.get_by_id(user_id)

    def deactivate_sessions(self, user_id: int) -> int:
        return self.sessions.destroy_for_user(user_id)

    def close(self) -> None:
        self.users.engine.dispose()
