"""API dependencies for authentication and authorization.

Core services are built once by the application factory and read from
``app.state``; nothing here holds module-level service instances.

Usage::

    @router.get("/students")
    async def list_students(
        identity: Identity = Depends(require_permission("students", "read")),
    ): ...
"""

import logging
import uuid
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from schooldesk.core.config import Settings
from schooldesk.core.database import get_db
from schooldesk.middleware.auth_gate import Identity, extract_bearer_token, identity_from_token
from schooldesk.services.errors import InvalidTokenError
from schooldesk.services.permissions import PermissionResolver, is_granted
from schooldesk.services.roles import RoleService
from schooldesk.services.tokens import TokenManager

logger = logging.getLogger(__name__)


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_permission_resolver(request: Request) -> PermissionResolver:
    return request.app.state.permission_resolver


def get_role_service(
    db: AsyncSession = Depends(get_db),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> RoleService:
    """Dependency to get role service."""
    return RoleService(db, resolver)


async def authenticate(
    request: Request,
    manager: TokenManager = Depends(get_token_manager),
) -> Identity:
    """Require a valid access token and return the caller identity.

    Reuses the identity left by ``BearerAuthMiddleware`` when present.
    """
    identity = getattr(request.state, "identity", None)
    if identity is not None:
        return identity

    token = extract_bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        identity = await identity_from_token(manager, token)
    except InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    request.state.identity = identity
    request.state.token = token
    return identity


async def authenticate_optional(
    request: Request,
    manager: TokenManager = Depends(get_token_manager),
) -> Identity | None:
    """Like ``authenticate`` but returns None instead of rejecting."""
    identity = getattr(request.state, "identity", None)
    if identity is not None:
        return identity

    token = extract_bearer_token(request)
    if not token:
        return None

    try:
        identity = await identity_from_token(manager, token)
    except InvalidTokenError as e:
        logger.debug(f"Ignoring invalid optional token: {e}")
        return None

    request.state.identity = identity
    request.state.token = token
    return identity


def require_permission(resource: str, action: str) -> Callable:
    """Return a dependency that requires ``action`` on ``resource``.

    Holders of the super role pass without a lookup. Everyone else needs a
    matching grant from their roles (exact, ``manage`` or ``*:*``).
    """

    async def _permission_dep(
        identity: Identity = Depends(authenticate),
        resolver: PermissionResolver = Depends(get_permission_resolver),
        settings: Settings = Depends(get_settings_dep),
    ) -> Identity:
        if identity.role == settings.super_role:
            return identity

        grants = await resolver.resolve(identity.user_id)
        if not is_granted(grants, resource, action):
            logger.warning(
                f"Permission denied: {resource}:{action}",
                extra={"user_id": identity.user_id, "action": "permission_denied"},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{resource}:{action}' required",
            )
        return identity

    # Distinct names keep FastAPI from collapsing the dependencies
    _permission_dep.__name__ = f"require_permission_{resource}_{action}"
    return _permission_dep


def require_role(*roles: str) -> Callable:
    """Return a dependency that requires one of ``roles``.

    Role membership is read from the user's current assignments rather than
    the token, so a removed role stops working before the token expires.
    """
    if not roles:
        raise ValueError("require_role needs at least one role")

    async def _role_dep(
        identity: Identity = Depends(authenticate),
        role_service: RoleService = Depends(get_role_service),
        settings: Settings = Depends(get_settings_dep),
    ) -> Identity:
        try:
            user_id = uuid.UUID(identity.user_id)
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            ) from e

        assigned = set(await role_service.get_role_names(user_id))
        if settings.super_role in assigned or assigned.intersection(roles):
            return identity

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"One of roles {', '.join(sorted(roles))} required",
        )

    _role_dep.__name__ = f"require_role_{'_'.join(roles)}"
    return _role_dep
