"""Role management - assignments and role grants.

Every mutation commits and then invalidates the permission cache of each
affected user, since the resolver has no other invalidation signal.
"""

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from schooldesk.models.rbac import Permission, Role, RolePermission, UserRole
from schooldesk.models.user import User
from schooldesk.services.errors import RoleNotFoundError, UserNotFoundError
from schooldesk.services.permissions import PermissionResolver

logger = logging.getLogger(__name__)


class RoleService:
    """Service for role and permission assignment."""

    def __init__(self, session: AsyncSession, resolver: PermissionResolver):
        self.session = session
        self.resolver = resolver

    async def list_roles(self) -> list[Role]:
        result = await self.session.execute(select(Role).order_by(Role.name))
        return list(result.scalars().all())

    async def get_role(self, name: str) -> Role:
        result = await self.session.execute(select(Role).where(Role.name == name))
        role = result.scalar_one_or_none()
        if role is None:
            raise RoleNotFoundError(f"Role '{name}' not found")
        return role

    async def get_or_create_role(self, name: str, description: str | None = None) -> Role:
        try:
            return await self.get_role(name)
        except RoleNotFoundError:
            role = Role(name=name, description=description)
            self.session.add(role)
            await self.session.flush()
            logger.info(f"Created role: {name}")
            return role

    async def get_role_names(self, user_id: uuid.UUID) -> list[str]:
        result = await self.session.execute(
            select(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
            .order_by(Role.name)
        )
        return list(result.scalars().all())

    async def _require_user(self, user_id: uuid.UUID) -> None:
        result = await self.session.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise UserNotFoundError(f"User {user_id} not found")

    async def _user_ids_with_role(self, role_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(UserRole.user_id).where(UserRole.role_id == role_id)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # User <-> role
    # ------------------------------------------------------------------

    async def assign_role(self, user_id: uuid.UUID, role_name: str, *, commit: bool = True) -> bool:
        """Give ``role_name`` to a user. Returns False if already assigned."""
        await self._require_user(user_id)
        role = await self.get_role(role_name)

        existing = await self.session.get(UserRole, (user_id, role.id))
        if existing is not None:
            return False

        self.session.add(UserRole(user_id=user_id, role_id=role.id))
        await self.session.flush()
        if commit:
            await self.session.commit()
        self.resolver.invalidate(user_id)
        logger.info(f"Assigned role {role_name} to user {user_id}")
        return True

    async def remove_role(self, user_id: uuid.UUID, role_name: str) -> bool:
        """Take ``role_name`` away from a user. Returns False if not assigned."""
        role = await self.get_role(role_name)
        result = await self.session.execute(
            delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role.id)
        )
        if not result.rowcount:
            return False
        await self.session.commit()
        self.resolver.invalidate(user_id)
        logger.info(f"Removed role {role_name} from user {user_id}")
        return True

    # ------------------------------------------------------------------
    # Role <-> permission
    # ------------------------------------------------------------------

    async def _get_or_create_permission(self, resource: str, action: str) -> Permission:
        result = await self.session.execute(
            select(Permission).where(Permission.resource == resource, Permission.action == action)
        )
        permission = result.scalar_one_or_none()
        if permission is None:
            permission = Permission(resource=resource, action=action)
            self.session.add(permission)
            await self.session.flush()
        return permission

    async def grant_permission(self, role_name: str, resource: str, action: str) -> bool:
        """Add (resource, action) to a role. Returns False if already granted."""
        role = await self.get_role(role_name)
        permission = await self._get_or_create_permission(resource, action)

        existing = await self.session.get(RolePermission, (role.id, permission.id))
        if existing is not None:
            return False

        self.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
        await self.session.flush()
        affected = await self._user_ids_with_role(role.id)
        await self.session.commit()
        self.resolver.invalidate_users(affected)
        logger.info(
            f"Granted {resource}:{action} to role {role_name} ({len(affected)} user(s) affected)"
        )
        return True

    async def revoke_permission(self, role_name: str, resource: str, action: str) -> bool:
        """Remove (resource, action) from a role. Returns False if not granted."""
        role = await self.get_role(role_name)
        result = await self.session.execute(
            select(Permission.id).where(Permission.resource == resource, Permission.action == action)
        )
        permission_id = result.scalar_one_or_none()
        if permission_id is None:
            return False

        deleted = await self.session.execute(
            delete(RolePermission).where(
                RolePermission.role_id == role.id,
                RolePermission.permission_id == permission_id,
            )
        )
        if not deleted.rowcount:
            return False

        affected = await self._user_ids_with_role(role.id)
        await self.session.commit()
        self.resolver.invalidate_users(affected)
        logger.info(
            f"Revoked {resource}:{action} from role {role_name} ({len(affected)} user(s) affected)"
        )
        return True
