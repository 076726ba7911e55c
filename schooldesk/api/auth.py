"""Authentication API endpoints."""

import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from schooldesk.api.deps import (
    authenticate,
    get_permission_resolver,
    get_settings_dep,
    get_token_manager,
)
from schooldesk.core.config import Settings
from schooldesk.core.database import get_db
from schooldesk.middleware.auth_gate import Identity
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
from schooldesk.services.auth import AuthService, LoginResult
from schooldesk.services.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    UserExistsError,
    UserInactiveError,
)
from schooldesk.services.permissions import PermissionResolver
from schooldesk.services.tokens import TokenManager, TokenPair

logger = logging.getLogger(__name__)

# Rate limiting for login attempts
_login_attempts: dict[str, list[float]] = defaultdict(list)
_LOGIN_WINDOW = 60  # 1-minute window

_RESET_REQUESTED_MESSAGE = "If the email is registered, a password reset link has been sent"


def _check_login_rate_limit(client_ip: str, max_attempts: int) -> None:
    """Check if a client IP has exceeded the login attempt rate limit."""
    now = time.monotonic()
    recent = [t for t in _login_attempts.get(client_ip, ()) if now - t < _LOGIN_WINDOW]
    if not recent:
        # Forget idle clients so the table only holds the current window
        _login_attempts.pop(client_ip, None)
        return
    _login_attempts[client_ip] = recent
    if len(recent) >= max_attempts:
        logger.warning("Login rate limit exceeded for %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(_LOGIN_WINDOW)},
        )


def _record_login_attempt(client_ip: str) -> None:
    """Record a login attempt for rate limiting."""
    _login_attempts[client_ip].append(time.monotonic())


def reset_login_attempts() -> None:
    _login_attempts.clear()


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
    )


def _auth_response(result: LoginResult, verification_token: str | None = None) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.model_validate(result.user),
        tokens=_token_response(result.tokens),
        verification_token=verification_token,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


router = APIRouter(prefix="/auth", tags=["auth"])


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    tokens: TokenManager = Depends(get_token_manager),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_settings_dep),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, tokens, resolver, settings)


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> AuthResponse:
    """Create an account with the default role and return a token pair.

    Returns 409 Conflict if the email or username is taken.
    """
    try:
        result = await auth_service.register(
            email=request.email,
            username=request.username,
            password=request.password,
            first_name=request.first_name,
            last_name=request.last_name,
        )
    except UserExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    verification_token = await auth_service.issue_email_verification(result.user)
    return _auth_response(result, verification_token if settings.debug else None)


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    http_request: Request,
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> AuthResponse:
    """Authenticate and get JWT tokens.

    Rate limited to LOGIN_RATE_LIMIT_PER_MINUTE failed attempts per IP.
    """
    client_ip = http_request.client.host if http_request.client else "unknown"
    _check_login_rate_limit(client_ip, settings.login_rate_limit_per_minute)

    try:
        result = await auth_service.login(request.login, request.password)
    except InvalidCredentialsError as e:
        _record_login_attempt(client_ip)
        raise _unauthorized("Invalid email or password") from e
    except UserInactiveError as e:
        _record_login_attempt(client_ip)
        raise _unauthorized("User account is deactivated") from e

    return _auth_response(result)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: RefreshRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Exchange a refresh token for a new pair.

    The presented refresh token is consumed; using it again returns 401.
    """
    try:
        tokens = await auth_service.refresh(request.refresh_token)
    except (InvalidTokenError, UserInactiveError) as e:
        raise _unauthorized(str(e)) from e
    return _token_response(tokens)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    http_request: Request,
    request: LogoutRequest | None = None,
    identity: Identity = Depends(authenticate),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Log out the current session.

    Revokes the access token and, when given, the refresh token.
    """
    await auth_service.logout(
        identity.user_id,
        http_request.state.token,
        request.refresh_token if request else None,
    )
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    http_request: Request,
    identity: Identity = Depends(authenticate),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Log out every session of the current user.

    Other sessions' access tokens stay valid until they expire.
    """
    if not await auth_service.logout_all(identity.user_id, http_request.state.token):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not revoke sessions. Please try again.",
        )
    return MessageResponse(message="Logged out from all sessions")


@router.get("/me", response_model=MeResponse)
async def get_current_user_info(
    identity: Identity = Depends(authenticate),
    auth_service: AuthService = Depends(get_auth_service),
) -> MeResponse:
    """Get the current user's information, roles and effective permissions."""
    user = await auth_service.get_user_by_id(identity.user_id)
    if user is None or not user.is_active:
        raise _unauthorized("User not found")

    return MeResponse(
        **UserResponse.model_validate(user).model_dump(),
        roles=[role.name for role in user.roles],
        permissions=await auth_service.permission_strings(user.id),
    )


@router.post("/request-password-reset", response_model=TokenIssuedResponse)
async def request_password_reset(
    request: PasswordResetRequest,
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> TokenIssuedResponse:
    """Issue a password reset token.

    Answers the same way whether or not the email is registered.
    """
    token = await auth_service.request_password_reset(request.email)
    return TokenIssuedResponse(
        message=_RESET_REQUESTED_MESSAGE,
        token=token if settings.debug else None,
    )


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    request: PasswordResetConfirm,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password with a reset token and end every session."""
    try:
        await auth_service.reset_password(request.token, request.new_password)
    except (InvalidTokenError, UserInactiveError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    request: VerifyEmailRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Mark the email address as verified with a verification token."""
    try:
        await auth_service.verify_email(request.token)
    except InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return MessageResponse(message="Email verified successfully")
