"""Role management API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from schooldesk.api.deps import get_role_service, require_permission
from schooldesk.middleware.auth_gate import Identity
from schooldesk.schemas.roles import (
    PermissionGrantRequest,
    RoleAssignmentRequest,
    RoleChangeResponse,
    RoleResponse,
)
from schooldesk.services.errors import RoleNotFoundError, UserNotFoundError
from schooldesk.services.roles import RoleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/roles", tags=["roles"])


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=list[RoleResponse])
async def list_roles(
    _: Identity = Depends(require_permission("roles", "read")),
    role_service: RoleService = Depends(get_role_service),
) -> list[RoleResponse]:
    """List roles with their permissions."""
    roles = await role_service.list_roles()
    return [RoleResponse.model_validate(role) for role in roles]


@router.post("/assignments", response_model=RoleChangeResponse)
async def assign_role(
    request: RoleAssignmentRequest,
    identity: Identity = Depends(require_permission("roles", "manage")),
    role_service: RoleService = Depends(get_role_service),
) -> RoleChangeResponse:
    """Assign a role to a user."""
    try:
        changed = await role_service.assign_role(request.user_id, request.role)
    except (RoleNotFoundError, UserNotFoundError) as e:
        raise _not_found(e) from e

    logger.info(
        f"Role {request.role} assigned to {request.user_id}",
        extra={"user_id": identity.user_id, "action": "assign_role"},
    )
    return RoleChangeResponse(
        changed=changed,
        message="Role assigned" if changed else "User already has this role",
    )


@router.delete("/assignments", response_model=RoleChangeResponse)
async def remove_role(
    request: RoleAssignmentRequest,
    identity: Identity = Depends(require_permission("roles", "manage")),
    role_service: RoleService = Depends(get_role_service),
) -> RoleChangeResponse:
    """Remove a role from a user."""
    try:
        changed = await role_service.remove_role(request.user_id, request.role)
    except RoleNotFoundError as e:
        raise _not_found(e) from e

    logger.info(
        f"Role {request.role} removed from {request.user_id}",
        extra={"user_id": identity.user_id, "action": "remove_role"},
    )
    return RoleChangeResponse(
        changed=changed,
        message="Role removed" if changed else "User does not have this role",
    )


@router.post("/{name}/permissions", response_model=RoleChangeResponse)
async def grant_permission(
    name: str,
    request: PermissionGrantRequest,
    identity: Identity = Depends(require_permission("roles", "manage")),
    role_service: RoleService = Depends(get_role_service),
) -> RoleChangeResponse:
    """Grant a (resource, action) permission to a role."""
    try:
        changed = await role_service.grant_permission(name, request.resource, request.action)
    except RoleNotFoundError as e:
        raise _not_found(e) from e

    logger.info(
        f"Permission {request.resource}:{request.action} granted to role {name}",
        extra={"user_id": identity.user_id, "action": "grant_permission"},
    )
    return RoleChangeResponse(
        changed=changed,
        message="Permission granted" if changed else "Role already has this permission",
    )


@router.delete("/{name}/permissions", response_model=RoleChangeResponse)
async def revoke_permission(
    name: str,
    request: PermissionGrantRequest,
    identity: Identity = Depends(require_permission("roles", "manage")),
    role_service: RoleService = Depends(get_role_service),
) -> RoleChangeResponse:
    """Revoke a (resource, action) permission from a role."""
    try:
        changed = await role_service.revoke_permission(name, request.resource, request.action)
    except RoleNotFoundError as e:
        raise _not_found(e) from e

    logger.info(
        f"Permission {request.resource}:{request.action} revoked from role {name}",
        extra={"user_id": identity.user_id, "action": "revoke_permission"},
    )
    return RoleChangeResponse(
        changed=changed,
        message="Permission revoked" if changed else "Role does not have this permission",
    )
