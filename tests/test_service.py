"""
tests/test_service.py -- Unit tests for the AuthService login state machine.

Every test drives AuthService directly with a FakeDirectory and an isolated
in-memory DB; the HTTP layer is covered in test_api_routes.py.

Covers:
  - directory match (existing and newly provisioned users)
  - directory no-match / unavailable fall back to the local password
  - strategy=local and strategy=directory pin the path
  - inactive accounts never get a session
  - the overall deadline fails closed and leaves no session
  - legacy hash upgrade, last_login stamping, logout, session resolution
  - password changes end the user's other sessions
  - role-only updates keep stored overrides
"""

from __future__ import annotations

import hashlib

import pytest
from sqlalchemy import text

from auth.models import Role, UserStatus
from auth.passwords import needs_rehash, verify_password
from auth.service import LoginStatus, LoginStrategy


def _session_count(service) -> int:
    with service.users.engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM sessions")).scalar()


class TestDirectoryPath:
    def test_match_existing_user(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        local = create_user(service, "jdoe", "local-pw")
        fake_directory.add("jdoe", "ldap-pw")

        outcome = service.login("jdoe", "ldap-pw")

        assert outcome.ok
        assert outcome.method == "directory"
        assert outcome.user.id == local.id
        assert outcome.session_token

    def test_match_new_identity_is_provisioned(self, make_service, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        fake_directory.add("newbie", "ldap-pw", display_name="New Bie")

        outcome = service.login("newbie", "ldap-pw")

        assert outcome.ok
        assert outcome.user.role is Role.USER
        assert outcome.user.name == "New Bie"
        assert service.users.get_department(outcome.user.department_id).name == "Hold"

    def test_directory_identity_matches_local_user_ignoring_case(
        self, make_service, create_user, fake_directory
    ) -> None:
        service = make_service(directory=fake_directory)
        local = create_user(service, "jdoe", "local-pw")
        fake_directory.add("JDoe", "ldap-pw")

        outcome = service.login("JDoe", "ldap-pw")

        assert outcome.ok
        assert outcome.method == "directory"
        assert outcome.user.id == local.id
        assert service.users.count_users() == 1

    def test_second_login_reuses_provisioned_row(self, make_service, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        fake_directory.add("newbie", "ldap-pw")
        first = service.login("newbie", "ldap-pw")
        second = service.login("newbie", "ldap-pw")
        assert first.user.id == second.user.id
        assert service.users.count_users() == 1

    def test_match_for_inactive_user_is_refused(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "gone", status=UserStatus.INACTIVE)
        fake_directory.add("gone", "ldap-pw")

        outcome = service.login("gone", "ldap-pw")

        assert outcome.status is LoginStatus.ACCOUNT_INACTIVE
        assert outcome.session_token is None
        assert _session_count(service) == 0


class TestLocalFallback:
    def test_no_match_falls_back_to_local(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123", role=Role.ADMINISTRATOR)

        outcome = service.login("admin", "admin123")

        assert outcome.ok
        assert outcome.method == "local"
        assert fake_directory.calls == ["admin"]

    def test_unavailable_falls_back_to_local(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123")
        fake_directory.available = False

        assert service.login("admin", "admin123").ok

    def test_no_directory_configured(self, make_service, create_user) -> None:
        service = make_service(directory=None)
        create_user(service, "admin", "admin123")
        assert service.login("admin", "admin123").ok

    def test_username_is_case_insensitive(self, make_service, create_user) -> None:
        service = make_service()
        create_user(service, "admin", "admin123")
        assert service.login("  ADMIN ", "admin123").ok

    def test_wrong_password(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123")

        outcome = service.login("admin", "wrong")

        assert outcome.status is LoginStatus.INVALID_CREDENTIALS
        assert outcome.user is None
        assert _session_count(service) == 0

    def test_unknown_user(self, make_service, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        assert service.login("nobody", "whatever").status is LoginStatus.INVALID_CREDENTIALS

    def test_inactive_local_account(self, make_service, create_user) -> None:
        service = make_service()
        create_user(service, "frozen", "pw123456", is_active=False)
        outcome = service.login("frozen", "pw123456")
        assert outcome.status is LoginStatus.ACCOUNT_INACTIVE
        assert _session_count(service) == 0

    @pytest.mark.parametrize("status", [UserStatus.PENDING, UserStatus.REJECTED])
    def test_non_active_status_refused(self, make_service, create_user, status) -> None:
        service = make_service()
        create_user(service, "waiting", "pw123456", status=status)
        assert service.login("waiting", "pw123456").status is LoginStatus.ACCOUNT_INACTIVE

    @pytest.mark.parametrize("username,password", [("", "pw"), ("admin", ""), ("   ", "pw")])
    def test_empty_input_never_reaches_the_directory(
        self, make_service, fake_directory, username, password
    ) -> None:
        service = make_service(directory=fake_directory)
        assert service.login(username, password).status is LoginStatus.INVALID_CREDENTIALS
        assert fake_directory.calls == []


class TestStrategy:
    def test_local_skips_directory(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123")
        fake_directory.add("admin", "admin123")

        outcome = service.login("admin", "admin123", LoginStrategy.LOCAL)

        assert outcome.method == "local"
        assert fake_directory.calls == []

    def test_directory_no_match_does_not_fall_back(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123")
        outcome = service.login("admin", "admin123", LoginStrategy.DIRECTORY)
        assert outcome.status is LoginStatus.INVALID_CREDENTIALS

    def test_directory_unavailable(self, make_service, create_user, fake_directory) -> None:
        service = make_service(directory=fake_directory)
        create_user(service, "admin", "admin123")
        fake_directory.available = False
        outcome = service.login("admin", "admin123", LoginStrategy.DIRECTORY)
        assert outcome.status is LoginStatus.SERVICE_UNAVAILABLE

    def test_directory_disabled(self, make_service) -> None:
        service = make_service(directory=None)
        outcome = service.login("admin", "admin123", LoginStrategy.DIRECTORY)
        assert outcome.status is LoginStatus.SERVICE_UNAVAILABLE


class SteppingClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowDirectory:
    """Wraps a FakeDirectory and advances the clock on every bind."""

    def __init__(self, inner, clock: SteppingClock, seconds: float) -> None:
        self.inner = inner
        self.clock = clock
        self.seconds = seconds

    def bind(self, username, password):
        self.clock.now += self.seconds
        return self.inner.bind(username, password)


class TestDeadline:
    def test_slow_directory_match_leaves_no_session(self, make_service, fake_directory) -> None:
        clock = SteppingClock()
        fake_directory.add("jdoe", "ldap-pw")
        service = make_service(directory=SlowDirectory(fake_directory, clock, 20), clock=clock, login_deadline_seconds=15)

        outcome = service.login("jdoe", "ldap-pw")

        assert outcome.status is LoginStatus.TIMED_OUT
        assert outcome.session_token is None
        assert _session_count(service) == 0
        assert service.users.count_users() == 0
        assert service.users.get_department_by_name("Hold") is None

    def test_slow_directory_match_leaves_existing_user_untouched(
        self, make_service, create_user, fake_directory
    ) -> None:
        clock = SteppingClock()
        fake_directory.add("jdoe", "ldap-pw")
        service = make_service(directory=SlowDirectory(fake_directory, clock, 20), clock=clock, login_deadline_seconds=15)
        user = create_user(service, "jdoe", "local-pw")

        assert service.login("jdoe", "ldap-pw").status is LoginStatus.TIMED_OUT
        assert service.users.get_by_id(user.id).last_login is None

    def test_slow_directory_skips_local_attempt(self, make_service, create_user, fake_directory) -> None:
        clock = SteppingClock()
        fake_directory.available = False
        service = make_service(directory=SlowDirectory(fake_directory, clock, 20), clock=clock, login_deadline_seconds=15)
        create_user(service, "admin", "admin123")

        assert service.login("admin", "admin123").status is LoginStatus.TIMED_OUT
        assert service.users.get_by_username("admin").last_login is None

    def test_within_deadline_succeeds(self, make_service, fake_directory) -> None:
        clock = SteppingClock()
        fake_directory.add("jdoe", "ldap-pw")
        service = make_service(directory=SlowDirectory(fake_directory, clock, 5), clock=clock, login_deadline_seconds=15)
        assert service.login("jdoe", "ldap-pw").ok


class TestSuccessSideEffects:
    def test_last_login_stamped(self, make_service, create_user) -> None:
        service = make_service()
        create_user(service, "admin", "admin123")
        outcome = service.login("admin", "admin123")
        assert outcome.user.last_login

    def test_legacy_hash_upgraded(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "veteran")
        key = hashlib.scrypt(b"old-secret", salt=b"0011aabb", n=16384, r=8, p=1, dklen=64)
        service.users.update_user(user.id, password=f"0011aabb.{key.hex()}")

        assert service.login("veteran", "old-secret").ok

        stored = service.users.get_by_id(user.id).password
        assert not needs_rehash(stored)
        assert verify_password("old-secret", stored)


class TestSessions:
    def test_current_user_round_trip(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "admin", "admin123")
        token = service.login("admin", "admin123").session_token
        assert service.current_user(token).id == user.id

    def test_logout(self, make_service, create_user) -> None:
        service = make_service()
        create_user(service, "admin", "admin123")
        token = service.login("admin", "admin123").session_token
        service.logout(token)
        assert service.current_user(token) is None

    def test_deactivated_user_loses_session(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "admin", "admin123")
        token = service.login("admin", "admin123").session_token
        service.users.update_user(user.id, status=UserStatus.INACTIVE)

        assert service.current_user(token) is None
        assert _session_count(service) == 0

    def test_missing_token(self, make_service) -> None:
        service = make_service()
        assert service.current_user(None) is None
        assert service.current_user("") is None

    def test_resume_reports_remaining_lifetime(self, make_service, create_user) -> None:
        service = make_service(ttl_seconds=600)
        user = create_user(service, "admin", "admin123")
        token = service.login("admin", "admin123").session_token

        session = service.resume_session(token)

        assert session.user.id == user.id
        assert 0 < session.remaining_seconds <= 600

    def test_change_password_keeps_only_the_callers_session(self, make_service, create_user) -> None:
        service = make_service()
        create_user(service, "admin", "admin123")
        mine = service.login("admin", "admin123").session_token
        other = service.login("admin", "admin123").session_token
        user = service.current_user(mine)

        assert service.change_password(user.id, "new-secret", keep_token=mine) == 1

        assert service.current_user(mine) is not None
        assert service.current_user(other) is None
        assert service.login("admin", "new-secret").ok
        assert not service.login("admin", "admin123").ok


class TestUpdatePermissions:
    def test_role_and_overrides_written(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "pm")
        updated = service.update_permissions(user.id, Role.PROJECT_MANAGER, {"canViewReports": True})
        assert updated.role is Role.PROJECT_MANAGER
        assert service.effective_permissions(updated).allows("canViewReports")

    def test_unknown_permission_rejected(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "pm")
        with pytest.raises(ValueError):
            service.update_permissions(user.id, Role.USER, {"canTeleport": True})
        assert service.users.get_by_id(user.id).custom_permissions is None

    def test_missing_user(self, make_service) -> None:
        assert make_service().update_permissions(404, Role.USER, None) is None

    def test_role_change_keeps_stored_overrides(self, make_service, create_user) -> None:
        service = make_service()
        user = create_user(service, "pm")
        stored = {"canRenamedAway": True, "canViewReports": True}
        service.users.update_user(user.id, custom_permissions=stored)

        updated = service.update_role(user.id, Role.PROJECT_MANAGER)

        assert updated.role is Role.PROJECT_MANAGER
        assert updated.custom_permissions == stored
        assert service.effective_permissions(updated).allows("canViewReports")

    def test_role_change_for_missing_user(self, make_service) -> None:
        assert make_service().update_role(404, Role.USER) is None
