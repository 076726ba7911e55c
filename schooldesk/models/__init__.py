# SchoolDesk Models
from schooldesk.models.base import BaseModel
from schooldesk.models.rbac import Permission, Role, RolePermission, UserRole
from schooldesk.models.user import User

__all__ = [
    "BaseModel",
    "Permission",
    "Role",
    "RolePermission",
    "User",
    "UserRole",
]
