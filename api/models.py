"""
API request and response models for the ProjectPulse auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in auth/models.py, which own the domain shape;
route handlers map between the two.

Field names are camelCase on the wire (customPermissions, departmentId, ...)
because that is what the existing dashboard client sends and reads. Python
attribute names stay snake_case through an alias generator.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role, User, UserStatus
from auth.permissions import parse_overrides


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_ApiModel):
    """Body of POST /api/login.

    strategy pins the login to one method and skips the fallback chain. It is
    the deterministic path for automated tests and break-glass admin access.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    strategy: Optional[Literal["local", "directory"]] = None


class ProfileUpdate(_ApiModel):
    """Body of PUT /api/user. Role and status are not accepted here."""

    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    preferred_language: Optional[str] = Field(default=None, max_length=10)
    password: Optional[str] = Field(default=None, min_length=6, max_length=255)


class UserCreate(_ApiModel):
    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=2, max_length=255)
    password: str = Field(min_length=6, max_length=255)
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    department_id: Optional[int] = None
    preferred_language: str = Field(default="en", max_length=10)


class UserUpdate(_ApiModel):
    """Body of PUT /api/users/{id}. Only supplied fields are changed."""

    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    department_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    preferred_language: Optional[str] = Field(default=None, max_length=10)
    is_active: Optional[bool] = None


class PermissionUpdate(_ApiModel):
    """Body of PATCH /api/users/{id}/permissions.

    customPermissions omitted keeps the stored overrides, null clears them,
    and an object replaces them. Unknown permission names are rejected.
    """

    role: Role
    custom_permissions: Optional[dict[str, bool]] = None

    @field_validator("custom_permissions", mode="before")
    @classmethod
    def known_permissions_only(cls, value):
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValueError("customPermissions must be an object")
        parse_overrides(value)
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_ApiModel):
    """A user as the client sees it. The password hash is never included."""

    id: int
    username: str
    email: str
    name: str
    role: Role
    status: UserStatus
    department_id: Optional[int] = None
    preferred_language: str
    is_active: bool
    custom_permissions: Optional[dict[str, bool]] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            name=user.name,
            role=user.role,
            status=user.status,
            department_id=user.department_id,
            preferred_language=user.preferred_language,
            is_active=user.is_active,
            custom_permissions=user.custom_permissions,
            last_login=user.last_login,
        )


class PermissionsResponse(_ApiModel):
    user_id: int
    role: Role
    permissions: dict[str, bool]


class TokenResponse(_ApiModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
