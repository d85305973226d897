"""
auth/dependencies.py -- Access Gate: FastAPI Depends() helpers.

Authentication (who is calling) is checked in priority order:
  1. Session cookie (SESSION_COOKIE_NAME) -- set by POST /api/login.
  2. Authorization: Bearer <jwt> -- issued by POST /api/token.

Both converge on a User that is still allowed to log in. A request that
authenticates with the session cookie gets the cookie re-issued with the
session's remaining lifetime, so the browser copy slides with the
server-side expiry.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Authorization (may they do this) has two gating modes, and both are honoured
when both are declared:
  - permission flag: the resolved PermissionSet must allow it
  - role list: the user's literal role must be in the list

check_access() raises PermissionDenied, which api/main.py maps to 403 so
the UI can tell "access denied" apart from "please log in" (401).

Layer rule: may import fastapi (this module is part of its DI system) but
not api/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import HTTPException, Request, Response

from auth.errors import PermissionDenied
from auth.models import Role, User
from auth.permissions import Permission, resolve
from auth.service import AuthService, can_authenticate
from auth.tokens import decode_access_token, set_session_cookie


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def try_get_current_user(request: Request, response: Response | None = None) -> User | None:
    """Authenticate the request via session cookie or Bearer JWT.

    Returns the User on success, None on any failure. Never raises for bad
    credentials; storage failures still propagate as SessionStoreFailure.
    When response is given and the cookie authenticated, the refreshed
    cookie is set on it.
    """
    service = get_auth_service(request)
    settings = request.app.state.settings

    token = request.cookies.get(settings.session_cookie_name)
    if token:
        session = service.resume_session(token)
        if session is not None:
            if response is not None:
                set_session_cookie(response, token, settings, max_age=max(int(session.remaining_seconds), 0))
            return session.user

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(auth_header[7:], settings.secret_key)
        if payload:
            user = service.users.get_by_id(payload["user_id"])
            if user is not None and can_authenticate(user):
                return user

    return None


def get_current_user(request: Request, response: Response) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...

    FastAPI injects response; cookies set on it are merged into whatever the
    route returns.
    """
    user = try_get_current_user(request, response)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def check_access(
    user: User,
    permission: Permission | None = None,
    roles: Iterable[Role] | None = None,
) -> None:
    """Raise PermissionDenied unless user satisfies every declared requirement."""
    if permission is not None and not resolve(user).allows(permission):
        raise PermissionDenied(permission.value)
    if roles is not None:
        allowed = {Role(r) for r in roles}
        if user.role not in allowed:
            raise PermissionDenied("role in " + ", ".join(sorted(r.value for r in allowed)))


def require_access(
    permission: Permission | None = None,
    roles: Iterable[Role] | None = None,
) -> Callable[[Request, Response], User]:
    """Dependency factory combining both gating modes.

    Usage:
        @router.patch("/users/{user_id}/permissions")
        def route(user: User = Depends(require_access(Permission.MANAGE_USERS))): ...
    """
    role_list = tuple(roles) if roles is not None else None

    def _gate(request: Request, response: Response) -> User:
        user = get_current_user(request, response)
        check_access(user, permission=permission, roles=role_list)
        return user

    return _gate


def require_permission(permission: Permission) -> Callable[[Request, Response], User]:
    return require_access(permission=permission)


def require_roles(*roles: Role) -> Callable[[Request, Response], User]:
    return require_access(roles=roles)
