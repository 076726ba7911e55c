"""Bearer-token authentication for the HTTP surface.

The gate has two entry points sharing the same rules:

- ``BearerAuthMiddleware`` rejects unauthenticated requests to ``/api/*``
  before routing, as defense in depth.
- The ``authenticate`` / ``authenticate_optional`` dependencies in
  ``schooldesk.api.deps`` resolve the identity for a handler. When the
  middleware already verified the request, the identity it left on
  ``request.state`` is reused instead of verifying twice.

Only ``access`` tokens authenticate a request. A valid refresh or
password-reset token presented as a bearer is rejected.
"""

import logging
from dataclasses import dataclass, field

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from schooldesk.services.errors import InvalidTokenError
from schooldesk.services.tokens import TokenManager, TokenType

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "

# Paths under /api that authenticate on their own (segment-boundary match)
EXCLUDED_PATHS = [
    "/api/health",
]


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of a request."""

    user_id: str
    email: str | None = None
    role: str | None = None
    permissions: tuple[str, ...] = field(default_factory=tuple)


def extract_bearer_token(request: Request) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith(BEARER_PREFIX):
        return None
    token = auth_header[len(BEARER_PREFIX) :].strip()
    return token or None


async def identity_from_token(manager: TokenManager, token: str) -> Identity:
    """Verify an access token and build the caller identity.

    Raises:
        InvalidTokenError: with the client-facing reason.
    """
    result = await manager.verify(token)
    if not result.valid or result.payload is None:
        raise InvalidTokenError(result.error or "Invalid token")

    payload = result.payload
    if payload.type is not TokenType.ACCESS:
        raise InvalidTokenError("Invalid token type")

    return Identity(
        user_id=payload.subject,
        email=payload.email,
        role=payload.role,
        permissions=payload.permissions,
    )


def unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


def is_protected_path(path: str) -> bool:
    if path != "/api" and not path.startswith("/api/"):
        return False
    for excluded in EXCLUDED_PATHS:
        if path == excluded or path.startswith(excluded + "/"):
            return False
    return True


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Require a valid access token on every /api/* request.

    - Token must be in: Authorization: Bearer <token>
    - Returns 401 Unauthorized if the token is missing, invalid, revoked or
      not an access token
    - Leaves ``request.state.identity`` and ``request.state.token`` for the
      handler dependencies
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # CORS preflight never carries credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        if not is_protected_path(path):
            return await call_next(request)

        token = extract_bearer_token(request)
        if not token:
            logger.warning(f"API request without token: {request.method} {path}")
            return unauthorized(
                "Authentication required. Include token in Authorization: Bearer <token> header."
            )

        manager: TokenManager = request.app.state.token_manager
        try:
            identity = await identity_from_token(manager, token)
        except InvalidTokenError as e:
            logger.warning(f"Rejected token for: {request.method} {path} - {e}")
            return unauthorized(str(e))

        request.state.identity = identity
        request.state.token = token
        return await call_next(request)
