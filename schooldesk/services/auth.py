"""Authentication service: accounts, sessions and one-time tokens."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schooldesk.core.config import Settings
from schooldesk.models.user import User
from schooldesk.services.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    UserExistsError,
    UserInactiveError,
)
from schooldesk.services.permissions import PermissionResolver
from schooldesk.services.roles import RoleService
from schooldesk.services.tokens import TokenManager, TokenPair, TokenType

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        logger.warning("Stored password hash could not be verified")
        return False


def primary_role(role_names: list[str], super_role: str) -> str | None:
    """Role carried in the access token: the super role if held, else the first by name."""
    if super_role in role_names:
        return super_role
    return min(role_names) if role_names else None


@dataclass
class LoginResult:
    """A signed-in user with the tokens of the session."""

    user: User
    tokens: TokenPair


class AuthService:
    """Service for authentication operations."""

    def __init__(
        self,
        session: AsyncSession,
        tokens: TokenManager,
        resolver: PermissionResolver,
        settings: Settings,
    ):
        self.session = session
        self.tokens = tokens
        self.resolver = resolver
        self.settings = settings

    async def get_user_by_id(self, user_id: UUID | str) -> User | None:
        """Get user by ID. Malformed ids yield None."""
        try:
            uid = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
        except ValueError:
            return None
        result = await self.session.execute(select(User).where(User.id == uid))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def get_user_by_login(self, login: str) -> User | None:
        """Get user by email or username."""
        login = login.strip()
        result = await self.session.execute(
            select(User).where(or_(User.email == login.lower(), User.username == login))
        )
        return result.scalar_one_or_none()

    async def permission_strings(self, user_id: UUID | str) -> list[str]:
        return [str(grant) for grant in await self.resolver.resolve(user_id)]

    async def start_session(self, user: User) -> TokenPair:
        """Issue an access/refresh pair carrying the user's current grants."""
        role_names = [role.name for role in user.roles]
        return await self.tokens.issue_pair(
            str(user.id),
            email=user.email,
            role=primary_role(role_names, self.settings.super_role),
            permissions=await self.permission_strings(user.id),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> LoginResult:
        """Create an account with the default role and sign it in.

        Raises:
            UserExistsError: email or username already taken.
        """
        email = email.lower()
        result = await self.session.execute(
            select(User.id).where(or_(User.email == email, User.username == username))
        )
        if result.first() is not None:
            raise UserExistsError("Email or username already registered")

        default_role = await RoleService(self.session, self.resolver).get_or_create_role(
            self.settings.default_role
        )
        user = User(
            email=email,
            username=username,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            roles=[default_role],
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise UserExistsError("Email or username already registered") from e
        logger.info(f"Registered user: {username}", extra={"user_id": str(user.id)})

        tokens = await self.start_session(user)
        return LoginResult(user=user, tokens=tokens)

    async def authenticate(self, login: str, password: str) -> User:
        """Check credentials and return the user.

        Raises InvalidCredentialsError for both "user not found" and
        "wrong password" to prevent user enumeration.
        """
        user = await self.get_user_by_login(login)

        if user is None:
            # Perform a dummy hash to prevent timing attacks
            verify_password(password, hash_password("dummy"))
            raise InvalidCredentialsError("Invalid email or password")

        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid email or password")

        if not user.is_active:
            raise UserInactiveError("User account is deactivated")

        # Update last login time
        user.last_login_at = datetime.now(UTC)
        await self.session.commit()

        return user

    async def login(self, login: str, password: str) -> LoginResult:
        user = await self.authenticate(login, password)
        tokens = await self.start_session(user)
        logger.info(f"User logged in: {user.username}", extra={"user_id": str(user.id)})
        return LoginResult(user=user, tokens=tokens)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _active_user_for(self, subject: str) -> User:
        user = await self.get_user_by_id(subject)
        if user is None:
            raise InvalidTokenError("User not found")
        if not user.is_active:
            raise UserInactiveError("User account is deactivated")
        return user

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Consume a refresh token and issue a new pair with fresh grants.

        A refresh token works once; replaying it (or losing a race against a
        concurrent refresh) raises InvalidTokenError.
        """
        payload = await self.tokens.consume(refresh_token, TokenType.REFRESH)
        if payload is None:
            raise InvalidTokenError("Invalid refresh token")

        user = await self._active_user_for(payload.subject)
        return await self.start_session(user)

    async def logout(self, user_id: str, access_token: str, refresh_token: str | None = None) -> None:
        """Revoke the access token and, if it belongs to the caller, the refresh token."""
        await self.tokens.revoke(access_token)
        if refresh_token:
            claims = self.tokens.decode(refresh_token) or {}
            if claims.get("sub") == user_id:
                await self.tokens.revoke(refresh_token)
            else:
                logger.warning(
                    "Ignoring refresh token of another subject on logout",
                    extra={"user_id": user_id},
                )
        logger.info("User logged out", extra={"user_id": user_id})

    async def logout_all(self, user_id: str, access_token: str) -> bool:
        """Revoke the current access token and every refresh/one-time token of the user."""
        await self.tokens.revoke(access_token)
        return await self.tokens.revoke_all_for_subject(user_id)

    # ------------------------------------------------------------------
    # Password reset and email verification
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> str | None:
        """Issue a reset token for an active account.

        Returns None for unknown or inactive emails; callers must answer the
        same way in both cases.
        """
        user = await self.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive email")
            return None

        token = await self.tokens.generate_secure_token(
            str(user.id), user.email, TokenType.RESET_PASSWORD
        )
        logger.info(
            "Password reset token issued",
            extra={"user_id": str(user.id), "action": "password_reset_requested"},
        )
        return token

    async def reset_password(self, token: str, new_password: str) -> User:
        """Consume a reset token, set the new password and end every session."""
        payload = await self.tokens.consume(token, TokenType.RESET_PASSWORD)
        if payload is None:
            raise InvalidTokenError("Invalid or expired reset token")

        user = await self._active_user_for(payload.subject)
        if payload.email != user.email:
            raise InvalidTokenError("Invalid or expired reset token")

        user.password_hash = hash_password(new_password)
        await self.session.commit()
        await self.tokens.revoke_all_for_subject(str(user.id))

        logger.info(f"Password reset for user: {user.username}", extra={"user_id": str(user.id)})
        return user

    async def issue_email_verification(self, user: User) -> str:
        token = await self.tokens.generate_secure_token(
            str(user.id), user.email, TokenType.EMAIL_VERIFICATION
        )
        logger.info(
            "Email verification token issued",
            extra={"user_id": str(user.id), "action": "email_verification_issued"},
        )
        return token

    async def verify_email(self, token: str) -> User:
        """Consume a verification token and mark the address as verified."""
        payload = await self.tokens.consume(token, TokenType.EMAIL_VERIFICATION)
        if payload is None:
            raise InvalidTokenError("Invalid or expired verification token")

        user = await self.get_user_by_id(payload.subject)
        if user is None or payload.email != user.email:
            raise InvalidTokenError("Invalid or expired verification token")

        user.email_verified = True
        await self.session.commit()
        logger.info(f"Email verified for user: {user.username}", extra={"user_id": str(user.id)})
        return user
