# SchoolDesk Pydantic Schemas
from schooldesk.schemas.auth import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    TokenIssuedResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from schooldesk.schemas.roles import (
    PermissionGrantRequest,
    PermissionResponse,
    RoleAssignmentRequest,
    RoleChangeResponse,
    RoleResponse,
)

__all__ = [
    "AuthResponse",
    "LoginRequest",
    "LogoutRequest",
    "MeResponse",
    "MessageResponse",
    "PasswordResetConfirm",
    "PasswordResetRequest",
    "PermissionGrantRequest",
    "PermissionResponse",
    "RefreshRequest",
    "RegisterRequest",
    "RoleAssignmentRequest",
    "RoleChangeResponse",
    "RoleResponse",
    "TokenIssuedResponse",
    "TokenResponse",
    "UserResponse",
    "VerifyEmailRequest",
]
