"""
api/routes/users.py -- User management endpoints.

Routes (mounted under /api):
  GET   /users                    -- list users               (canManageUsers)
  POST  /users                    -- create a local user      (canManageUsers)
  GET   /users/{id}               -- one user                 (any session)
  PUT   /users/{id}               -- role/status/profile edit (role list, see below)
  PATCH /users/{id}/permissions   -- role + overrides         (canManageUsers)
  GET   /users/{id}/permissions   -- resolved permission map  (canManageUsers)

PUT /users/{id} uses role-list gating: Administrator, MainPMO or
DepartmentDirector. A DepartmentDirector may only edit users of their own
department and may not hand out Administrator or MainPMO.

[M4] No route lets an admin deactivate themselves, or deactivate or demote
the last active Administrator.

Leaving the Active status destroys all of the target's sessions, so the
change takes effect on their next request rather than at session expiry.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import PermissionsResponse, PermissionUpdate, UserCreate, UserResponse, UserUpdate
from auth.dependencies import get_auth_service, get_current_user, require_permission, require_roles
from auth.errors import PermissionDenied
from auth.models import Role, User, UserStatus
from auth.passwords import hash_password
from auth.permissions import Permission
from auth.service import AuthService

logger = logging.getLogger("projectpulse.api.users")

router = APIRouter()

_USER_EDITORS = (Role.ADMINISTRATOR, Role.MAIN_PMO, Role.DEPARTMENT_DIRECTOR)
_DIRECTOR_FORBIDDEN_ROLES = {Role.ADMINISTRATOR, Role.MAIN_PMO}


def _load_target(service: AuthService, user_id: int) -> User:
    target = service.users.get_by_id(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    return target


def _is_active_admin(user: User) -> bool:
    return user.role is Role.ADMINISTRATOR and user.status is UserStatus.ACTIVE and user.is_active


def _guard_last_admin(
    service: AuthService,
    target: User,
    role: Role | None,
    status: UserStatus | None,
    is_active: bool | None,
) -> None:
    """[M4] Refuse changes that would leave no active Administrator."""
    if not _is_active_admin(target):
        return
    loses_admin = (
        (role is not None and role is not Role.ADMINISTRATOR)
        or (status is not None and status is not UserStatus.ACTIVE)
        or is_active is False
    )
    if loses_admin and service.users.count_active_admins() <= 1:
        raise HTTPException(status_code=400, detail="Cannot remove the last active Administrator")


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    current_user: User = Depends(require_permission(Permission.MANAGE_USERS)),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in get_auth_service(request).users.list_users()]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_permission(Permission.MANAGE_USERS)),
) -> UserResponse:
    """Create a local account. Usernames are unique regardless of case."""
    service = get_auth_service(request)
    new_user = User(
        username=body.username.strip(),
        email=body.email,
        name=body.name,
        password=hash_password(body.password),
        role=body.role,
        status=body.status,
        department_id=body.department_id,
        preferred_language=body.preferred_language,
    )
    try:
        user_id = service.users.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A user with that username already exists") from exc
    logger.info("User %r (id=%s) created by user_id=%s", new_user.username, user_id, current_user.id)
    return UserResponse.from_user(service.users.get_by_id(user_id))


@router.get("/users/{user_id}", response_model=UserResponse)
def read_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    return UserResponse.from_user(_load_target(get_auth_service(request), user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    current_user: User = Depends(require_roles(*_USER_EDITORS)),
) -> UserResponse:
    service = get_auth_service(request)
    target = _load_target(service, user_id)

    if current_user.role is Role.DEPARTMENT_DIRECTOR:
        if target.department_id is None or target.department_id != current_user.department_id:
            raise PermissionDenied("target user in own department")
        if body.role in _DIRECTOR_FORBIDDEN_ROLES:
            raise PermissionDenied(f"assign role {body.role.value}")

    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    deactivating = (
        updates.get("status", UserStatus.ACTIVE) is not UserStatus.ACTIVE
        or updates.get("is_active") is False
    )
    if deactivating and target.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    _guard_last_admin(service, target, updates.get("role"), updates.get("status"), updates.get("is_active"))

    service.users.update_user(user_id, **updates)
    if deactivating:
        removed = service.deactivate_sessions(user_id)
        logger.info("User id=%s deactivated by user_id=%s; %d sessions destroyed", user_id, current_user.id, removed)
    return UserResponse.from_user(service.users.get_by_id(user_id))


@router.patch("/users/{user_id}/permissions", response_model=UserResponse)
def update_user_permissions(
    request: Request,
    user_id: int,
    body: PermissionUpdate,
    current_user: User = Depends(require_permission(Permission.MANAGE_USERS)),
) -> UserResponse:
    """Set a user's role and per-permission overrides."""
    service = get_auth_service(request)
    target = _load_target(service, user_id)
    _guard_last_admin(service, target, body.role, None, None)

    if "custom_permissions" in body.model_fields_set:
        updated = service.update_permissions(user_id, body.role, body.custom_permissions)
    else:
        updated = service.update_role(user_id, body.role)
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Permissions of user id=%s changed by user_id=%s", user_id, current_user.id)
    return UserResponse.from_user(updated)


@router.get("/users/{user_id}/permissions", response_model=PermissionsResponse)
def read_user_permissions(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission(Permission.MANAGE_USERS)),
) -> PermissionsResponse:
    service = get_auth_service(request)
    target = _load_target(service, user_id)
    permissions = service.effective_permissions(target)
    return PermissionsResponse(user_id=target.id, role=target.role, permissions=permissions.as_dict())
