"""Middleware module for SchoolDesk."""

from schooldesk.middleware.auth_gate import (
    BearerAuthMiddleware,
    Identity,
    extract_bearer_token,
    identity_from_token,
)
from schooldesk.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "BearerAuthMiddleware",
    "Identity",
    "SecurityHeadersMiddleware",
    "extract_bearer_token",
    "identity_from_token",
]
