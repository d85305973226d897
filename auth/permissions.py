"""
auth/permissions.py -- Permission Resolver.

The effective permission set of a user is the default set of their role with
each key present in user.custom_permissions replacing that one key's value.
Keys absent from the override map keep the role default.

Permission names form a closed enumeration. Two rules follow from that:
  - Writing an override with an unknown name is a validation error
    (parse_overrides raises ValueError; the API turns it into a 422).
  - Querying an unknown name answers False (deny by default).

ROLE_DEFAULTS is immutable application configuration, not database state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from auth.models import Role, User

logger = logging.getLogger("projectpulse.auth.permissions")


class Permission(str, Enum):
    CREATE_PROJECT = "canCreateProject"
    EDIT_PROJECT = "canEditProject"
    DELETE_PROJECT = "canDeleteProject"
    APPROVE_PROJECT = "canApproveProject"
    MANAGE_DEPARTMENTS = "canManageDepartments"
    MANAGE_USERS = "canManageUsers"
    SUBMIT_CHANGE_REQUEST = "canSubmitChangeRequest"
    APPROVE_CHANGE_REQUEST = "canApproveChangeRequest"
    CREATE_TASK = "canCreateTask"
    ASSIGN_TASK = "canAssignTask"
    VIEW_ALL_DEPARTMENTS = "canViewAllDepartments"
    VIEW_REPORTS = "canViewReports"
    VIEW_ANALYTICS = "canViewAnalytics"
    ACCESS_ADMIN_SETTINGS = "canAccessAdminSettings"
    EDIT_OWN_PROJECT = "canEditOwnProject"
    MANAGE_OWN_PROJECT_TASKS = "canManageOwnProjectTasks"
    UPDATE_OWN_PROJECT_COSTS = "canUpdateOwnProjectCosts"
    CREATE_GOAL = "canCreateGoal"
    CREATE_ASSIGNMENT = "canCreateAssignment"
    CREATE_RISK_ISSUE = "canCreateRiskIssue"


_P = Permission

_DIRECTOR_SET = frozenset(
    {
        _P.CREATE_PROJECT,
        _P.EDIT_PROJECT,
        _P.APPROVE_PROJECT,
        _P.SUBMIT_CHANGE_REQUEST,
        _P.APPROVE_CHANGE_REQUEST,
        _P.CREATE_TASK,
        _P.ASSIGN_TASK,
        _P.VIEW_REPORTS,
        _P.VIEW_ANALYTICS,
        _P.EDIT_OWN_PROJECT,
        _P.MANAGE_OWN_PROJECT_TASKS,
        _P.UPDATE_OWN_PROJECT_COSTS,
        _P.CREATE_GOAL,
        _P.CREATE_ASSIGNMENT,
        _P.CREATE_RISK_ISSUE,
    }
)

ROLE_DEFAULTS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.ADMINISTRATOR: frozenset(Permission),
        Role.MAIN_PMO: frozenset(Permission),
        Role.SUB_PMO: _DIRECTOR_SET,
        Role.DEPARTMENT_DIRECTOR: _DIRECTOR_SET,
        Role.PROJECT_MANAGER: frozenset(
            {
                _P.CREATE_PROJECT,
                _P.EDIT_PROJECT,
                _P.SUBMIT_CHANGE_REQUEST,
                _P.CREATE_TASK,
                _P.ASSIGN_TASK,
                _P.EDIT_OWN_PROJECT,
                _P.MANAGE_OWN_PROJECT_TASKS,
                _P.UPDATE_OWN_PROJECT_COSTS,
                _P.CREATE_GOAL,
                _P.CREATE_ASSIGNMENT,
                _P.CREATE_RISK_ISSUE,
            }
        ),
        Role.EXECUTIVE: frozenset(
            {
                _P.APPROVE_PROJECT,
                _P.VIEW_ALL_DEPARTMENTS,
                _P.VIEW_REPORTS,
                _P.VIEW_ANALYTICS,
                _P.CREATE_GOAL,
                _P.CREATE_ASSIGNMENT,
                _P.CREATE_RISK_ISSUE,
            }
        ),
        Role.USER: frozenset(
            {
                _P.SUBMIT_CHANGE_REQUEST,
                _P.CREATE_ASSIGNMENT,
                _P.CREATE_RISK_ISSUE,
            }
        ),
    }
)


@dataclass(frozen=True)
class PermissionSet:
    """The resolved, immutable set of granted permissions for one user."""

    granted: frozenset[Permission]

    def allows(self, permission: Permission | str) -> bool:
        """Return True if granted. Unknown names are denied, never raised."""
        if not isinstance(permission, Permission):
            try:
                permission = Permission(permission)
            except ValueError:
                return False
        return permission in self.granted

    def __contains__(self, permission: object) -> bool:
        return isinstance(permission, (Permission, str)) and self.allows(permission)

    def as_dict(self) -> dict[str, bool]:
        """Every known permission name mapped to its boolean, in enum order."""
        return {p.value: p in self.granted for p in Permission}


def parse_overrides(raw: Mapping[str, object] | None) -> dict[Permission, bool]:
    """Validate an override map supplied by a caller.

    Raises ValueError naming the offending key for unknown permission names
    or non-boolean values.
    """
    if raw is None:
        return {}
    parsed: dict[Permission, bool] = {}
    for key, value in raw.items():
        try:
            permission = Permission(key)
        except ValueError:
            raise ValueError(f"Unknown permission: {key!r}") from None
        if not isinstance(value, bool):
            raise ValueError(f"Permission {key!r} must be true or false")
        parsed[permission] = value
    return parsed


def _stored_overrides(raw: Mapping[str, object] | None) -> dict[Permission, bool]:
    # Rows written before a permission was renamed may hold stale keys.
    overrides: dict[Permission, bool] = {}
    for key, value in (raw or {}).items():
        try:
            permission = Permission(key)
        except ValueError:
            logger.warning("Ignoring unknown stored permission override %r", key)
            continue
        overrides[permission] = bool(value)
    return overrides


def resolve_permissions(role: Role | str, custom_permissions: Mapping[str, object] | None = None) -> PermissionSet:
    try:
        granted = set(ROLE_DEFAULTS[Role(role)])
    except ValueError:
        logger.warning("Unknown role %r resolves to an empty permission set", role)
        granted = set()
    for permission, allowed in _stored_overrides(custom_permissions).items():
        if allowed:
            granted.add(permission)
        else:
            granted.discard(permission)
    return PermissionSet(frozenset(granted))


def resolve(user: User) -> PermissionSet:
    """Effective permissions for user: role defaults plus per-key overrides."""
    return resolve_permissions(user.role, user.custom_permissions)
