"""Pydantic schemas for role management API."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

_NAME_PATTERN = r"^(\*|[a-z][a-z0-9_\-]*)$"


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resource: str
    action: str
    description: str | None = None


class RoleResponse(BaseModel):
    """A role and the permissions granted to it."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    permissions: list[PermissionResponse] = Field(default_factory=list)


class RoleAssignmentRequest(BaseModel):
    """Assign or remove a role for a user."""

    user_id: UUID
    role: str = Field(..., min_length=1, max_length=50)


class PermissionGrantRequest(BaseModel):
    """Grant or revoke a (resource, action) pair on a role."""

    resource: str = Field(
        ...,
        min_length=1,
        max_length=100,
        pattern=_NAME_PATTERN,
        description='Resource name, or "*" for every resource',
    )
    action: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=_NAME_PATTERN,
        description='Action (create, read, update, delete, manage) or "*"',
    )


class RoleChangeResponse(BaseModel):
    """Outcome of a role mutation. ``changed`` is False when it was a no-op."""

    changed: bool
    message: str
