# SchoolDesk Services
from schooldesk.services.auth import AuthService, LoginResult
from schooldesk.services.permissions import Grant, PermissionResolver, is_granted
from schooldesk.services.roles import RoleService
from schooldesk.services.tokens import TokenManager, TokenPair, TokenType

__all__ = [
    "AuthService",
    "Grant",
    "LoginResult",
    "PermissionResolver",
    "RoleService",
    "TokenManager",
    "TokenPair",
    "TokenType",
    "is_granted",
]
