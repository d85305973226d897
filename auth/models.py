"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
AuthService do the work; route handlers map these onto API models.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Fixed role enumeration. Values are the strings persisted in users.role."""

    ADMINISTRATOR = "Administrator"
    MAIN_PMO = "MainPMO"
    SUB_PMO = "SubPMO"
    DEPARTMENT_DIRECTOR = "DepartmentDirector"
    PROJECT_MANAGER = "ProjectManager"
    EXECUTIVE = "Executive"
    USER = "User"


class UserStatus(str, Enum):
    """Account lifecycle status. Only ACTIVE accounts may log in or hold a session."""

    PENDING = "Pending"
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    REJECTED = "Rejected"


@dataclass
class User:
    """A ProjectPulse account.

    password is always a one-way hash (bcrypt, or a legacy scrypt
    "salt.derivedKeyHex" string). Directory-provisioned accounts carry a random
    hash nobody knows -- they only ever authenticate through the directory.

    custom_permissions maps permission names to booleans and overrides the
    role default for exactly those keys. None means "no overrides".
    """

    username: str
    email: str
    name: str
    password: str
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    id: int | None = None
    department_id: int | None = None
    preferred_language: str = "en"
    is_active: bool = True
    custom_permissions: dict[str, bool] | None = None
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class Department:
    name: str
    description: str | None = None
    id: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class DirectoryUser:
    """Attributes read from the directory entry after a successful user bind."""

    username: str
    email: str
    display_name: str
    dn: str
