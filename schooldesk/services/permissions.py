"""Permission resolution with a short-lived per-user cache.

A user's effective grants are the union of the permissions of every role
assigned to them. Resolution walks user_roles -> role_permissions ->
permissions and caches the deduplicated result per user for
``ttl_seconds``.

There is no write-through: any code that changes a user's roles or a role's
permissions must call :meth:`PermissionResolver.invalidate` (or
``invalidate_users``) for every affected user. ``RoleService`` does this.
"""

import logging
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schooldesk.models.rbac import Permission, RolePermission, UserRole

logger = logging.getLogger(__name__)

WILDCARD = "*"


class PermissionAction(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


@dataclass(frozen=True, order=True)
class Grant:
    resource: str
    action: str

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


def is_granted(grants: Iterable[Grant], resource: str, action: str) -> bool:
    """Return True if ``grants`` allow ``action`` on ``resource``.

    Matches exactly, via ``(resource, manage)``, or via the ``(*, *)``
    wildcard. Resource names are never prefix-matched.
    """
    action = action.value if isinstance(action, PermissionAction) else action
    for grant in grants:
        if grant.resource == WILDCARD and grant.action == WILDCARD:
            return True
        if grant.resource != resource:
            continue
        if grant.action == action or grant.action == PermissionAction.MANAGE.value:
            return True
    return False


class PermissionResolver:
    """Resolves and caches the (resource, action) grants of users."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], *, ttl_seconds: int = 600):
        self._session_maker = session_maker
        self.ttl_seconds = ttl_seconds
        self._cache: dict[str, tuple[float, tuple[Grant, ...]]] = {}
        # Bumped on every invalidation so a load that started earlier is not cached
        self._generations: dict[str, int] = {}
        self._epoch = 0

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def resolve(self, user_id: uuid.UUID | str) -> list[Grant]:
        key = str(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            expires_at, grants = cached
            if time.monotonic() < expires_at:
                return list(grants)
            del self._cache[key]

        generation = self._generation(key)
        try:
            grants = await self._load(key)
        except Exception:
            # Not cached, so the next request retries the lookup
            logger.exception(f"Error fetching permissions for user {key}")
            return []

        if self._generation(key) == generation:
            self._cache[key] = (time.monotonic() + self.ttl_seconds, grants)
        else:
            logger.debug(f"Permissions of user {key} changed during lookup; not caching")
        return list(grants)

    async def _load(self, user_id: str) -> tuple[Grant, ...]:
        try:
            uid = uuid.UUID(user_id)
        except ValueError:
            logger.warning(f"Cannot resolve permissions for malformed user id {user_id!r}")
            return ()

        stmt = (
            select(Permission.resource, Permission.action)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .where(UserRole.user_id == uid)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).all()

        return tuple(sorted({Grant(resource, action) for resource, action in rows}))

    async def has_permission(self, user_id: uuid.UUID | str, resource: str, action: str) -> bool:
        return is_granted(await self.resolve(user_id), resource, action)

    def invalidate(self, user_id: uuid.UUID | str) -> None:
        """Drop the cached grants of one user."""
        key = str(user_id)
        self._generations[key] = self._generations.get(key, 0) + 1
        if self._cache.pop(key, None) is not None:
            logger.debug(f"Cleared permission cache for user {user_id}")

    def invalidate_users(self, user_ids: Iterable[uuid.UUID | str]) -> None:
        for user_id in user_ids:
            self.invalidate(user_id)

    def clear(self) -> None:
        self._epoch += 1
        self._generations.clear()
        self._cache.clear()
