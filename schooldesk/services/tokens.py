"""Token issuance, verification and revocation.

Access tokens are stateless: apart from the signature and expiry they are
only checked against the blacklist. Refresh, password-reset and
email-verification tokens are single use: each one is registered in a
whitelist when issued and removed from it when consumed.

Revocation store layout (logical keys; the store applies its prefix):

    whitelist:{jti}:{subject}     live single-use token
    whitelist_index:{subject}     set of whitelisted jtis for the subject
    blacklist:{jti}               revoked token, expires with the token
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import jwt
from jwt.exceptions import ExpiredSignatureError, PyJWTError

from schooldesk.core.config import Settings, parse_duration
from schooldesk.core.revocation_store import RevocationStore, RevocationStoreError
from schooldesk.services.errors import TokenGenerationError

logger = logging.getLogger(__name__)

_RESERVED_CLAIMS = frozenset({"sub", "type", "jti", "iat", "exp"})
_IDENTITY_CLAIMS = ("email", "role", "permissions")


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET_PASSWORD = "reset_password"
    EMAIL_VERIFICATION = "email_verification"

    @property
    def requires_whitelist(self) -> bool:
        """Single-use types must be present in the whitelist to be valid."""
        return self in _SINGLE_USE_TYPES


_SINGLE_USE_TYPES = frozenset(
    {TokenType.REFRESH, TokenType.RESET_PASSWORD, TokenType.EMAIL_VERIFICATION}
)
SECURE_TOKEN_TYPES = frozenset({TokenType.RESET_PASSWORD, TokenType.EMAIL_VERIFICATION})


class VerificationFailure(Enum):
    """Why a token was rejected. Values are the client-facing messages."""

    INVALID = "Invalid token"
    EXPIRED = "Token has expired"
    REVOKED = "Token has been revoked"
    NOT_WHITELISTED = "Token is not valid"
    UNAVAILABLE = "Failed to verify token"


def whitelist_key(jti: str, subject: str) -> str:
    return f"whitelist:{jti}:{subject}"


def subject_index_key(subject: str) -> str:
    return f"whitelist_index:{subject}"


def blacklist_key(jti: str) -> str:
    return f"blacklist:{jti}"


@dataclass(frozen=True)
class TokenPayload:
    """Verified claims of a token."""

    subject: str
    type: TokenType
    jti: str
    issued_at: int
    expires_at: int
    email: str | None = None
    role: str | None = None
    permissions: tuple[str, ...] = ()
    claims: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        """Build a payload from decoded claims.

        Raises KeyError/ValueError/TypeError when required claims are missing
        or malformed.
        """
        permissions = claims.get("permissions") or []
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise ValueError("permissions claim must be a list of strings")
        return cls(
            subject=str(claims["sub"]),
            type=TokenType(claims["type"]),
            jti=str(claims["jti"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            email=claims.get("email"),
            role=claims.get("role"),
            permissions=tuple(permissions),
            claims=dict(claims),
        )

    def remaining_seconds(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.expires_at - now))

    def identity_claims(self) -> dict[str, Any]:
        """Claims describing the user, suitable for re-issuing a token."""
        claims: dict[str, Any] = {}
        if self.email is not None:
            claims["email"] = self.email
        if self.role is not None:
            claims["role"] = self.role
        if self.permissions:
            claims["permissions"] = list(self.permissions)
        return claims


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    payload: TokenPayload | None = None
    failure: VerificationFailure | None = None

    @property
    def error(self) -> str | None:
        return self.failure.value if self.failure else None

    @classmethod
    def ok(cls, payload: TokenPayload) -> "VerificationResult":
        return cls(valid=True, payload=payload)

    @classmethod
    def fail(cls, failure: VerificationFailure) -> "VerificationResult":
        return cls(valid=False, failure=failure)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class TokenManager:
    """Issues, verifies and revokes JWTs backed by a revocation store.

    One instance is built at application start and shared by every request;
    it holds no mutable state of its own besides the store client.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        secret_key: str,
        algorithm: str = "HS256",
        access_expires: int = 3600,
        refresh_expires: int = 7 * 86400,
        secure_expires: int = 3600,
        leeway: int = 0,
    ):
        self.store = store
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.access_expires = access_expires
        self.refresh_expires = refresh_expires
        self.secure_expires = secure_expires
        self.leeway = leeway

    @classmethod
    def from_settings(cls, settings: Settings, store: RevocationStore) -> "TokenManager":
        return cls(
            store,
            secret_key=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            access_expires=settings.jwt_access_token_expires,
            refresh_expires=settings.jwt_refresh_token_expires,
            secure_expires=settings.jwt_secure_token_expires,
            leeway=settings.jwt_leeway_seconds,
        )

    def lifetime(self, token_type: TokenType) -> int:
        """Default lifetime in seconds for ``token_type``."""
        if token_type is TokenType.ACCESS:
            return self.access_expires
        if token_type is TokenType.REFRESH:
            return self.refresh_expires
        return self.secure_expires

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue(
        self,
        subject: str,
        token_type: TokenType,
        claims: dict[str, Any] | None = None,
        expires_in: int | str | None = None,
    ) -> str:
        """Sign a new token and register it in the whitelist if single use.

        ``expires_in`` accepts seconds or a duration string ("15m", "7d").

        Raises:
            TokenGenerationError: signing or whitelist registration failed.
        """
        ttl = self.lifetime(token_type) if expires_in is None else parse_duration(expires_in)
        jti = str(uuid.uuid4())
        now = int(time.time())

        payload = {
            key: value
            for key, value in (claims or {}).items()
            if value is not None and key not in _RESERVED_CLAIMS
        }
        payload.update(
            sub=str(subject),
            type=token_type.value,
            jti=jti,
            iat=now,
            exp=now + ttl,
        )

        try:
            token = jwt.encode(payload, self._secret_key, algorithm=self.algorithm)
        except (PyJWTError, NotImplementedError, TypeError, ValueError) as e:
            logger.error(f"Error signing {token_type.value} token: {e}")
            raise TokenGenerationError("Failed to generate authentication token") from e

        if token_type.requires_whitelist:
            try:
                await self.store.set(whitelist_key(jti, str(subject)), "1", ttl)
                await self.store.add_to_set(subject_index_key(str(subject)), jti, ttl)
            except RevocationStoreError as e:
                logger.error(f"Error whitelisting {token_type.value} token: {e}")
                raise TokenGenerationError("Failed to register authentication token") from e

        return str(token)

    async def issue_pair(
        self,
        subject: str,
        email: str | None = None,
        role: str | None = None,
        permissions: list[str] | None = None,
    ) -> TokenPair:
        """Start or renew a session.

        The refresh token carries only the subject so a leaked refresh token
        reveals nothing about the user's role or grants.
        """
        access_token = await self.issue(
            subject,
            TokenType.ACCESS,
            {"email": email, "role": role, "permissions": list(permissions or [])},
        )
        refresh_token = await self.issue(subject, TokenType.REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_expires,
        )

    async def generate_secure_token(
        self,
        subject: str,
        email: str,
        token_type: TokenType,
        expires_in: int | str | None = None,
    ) -> str:
        """Issue a single-use password-reset or email-verification token."""
        if token_type not in SECURE_TOKEN_TYPES:
            raise ValueError(f"{token_type.value} is not a password-reset or verification type")
        return await self.issue(subject, token_type, {"email": email}, expires_in)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def decode(self, token: str) -> dict[str, Any] | None:
        """Decode claims without verifying signature or expiry."""
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except PyJWTError as e:
            logger.debug(f"Error decoding token: {e}")
            return None

    async def verify(self, token: str) -> VerificationResult:
        """Check signature, expiry, blacklist and (for single-use types) whitelist.

        Never raises: any store problem is reported as ``UNAVAILABLE`` so
        callers treat the token as invalid.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                leeway=self.leeway,
                options={"require": ["exp", "iat", "sub", "jti"]},
            )
        except ExpiredSignatureError:
            return VerificationResult.fail(VerificationFailure.EXPIRED)
        except PyJWTError as e:
            logger.debug(f"JWT decode failed: {e}")
            return VerificationResult.fail(VerificationFailure.INVALID)

        try:
            payload = TokenPayload.from_claims(claims)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Malformed token claims: {e}")
            return VerificationResult.fail(VerificationFailure.INVALID)

        try:
            if await self.store.exists(blacklist_key(payload.jti)):
                return VerificationResult.fail(VerificationFailure.REVOKED)
            if payload.type.requires_whitelist and not await self.store.exists(
                whitelist_key(payload.jti, payload.subject)
            ):
                return VerificationResult.fail(VerificationFailure.NOT_WHITELISTED)
        except RevocationStoreError:
            return VerificationResult.fail(VerificationFailure.UNAVAILABLE)
        except Exception:
            logger.exception("Unexpected error verifying token")
            return VerificationResult.fail(VerificationFailure.UNAVAILABLE)

        return VerificationResult.ok(payload)

    # ------------------------------------------------------------------
    # Consumption and rotation
    # ------------------------------------------------------------------

    async def consume(self, token: str, expected_type: TokenType) -> TokenPayload | None:
        """Verify a single-use token and retire it.

        The whitelist entry is removed with one DEL; only the caller whose
        DEL actually removed it gets the payload back, so concurrent
        consumers of the same token cannot both succeed.
        """
        if not expected_type.requires_whitelist:
            raise ValueError(f"{expected_type.value} tokens are not single use")

        result = await self.verify(token)
        if not result.valid or result.payload is None:
            return None
        payload = result.payload
        if payload.type is not expected_type:
            logger.warning(
                f"Token type mismatch: expected {expected_type.value}, got {payload.type.value}",
                extra={"user_id": payload.subject, "jti": payload.jti},
            )
            return None

        try:
            removed = await self.store.delete(whitelist_key(payload.jti, payload.subject))
        except RevocationStoreError:
            return None
        if removed == 0:
            logger.warning(
                f"{payload.type.value} token already consumed",
                extra={"user_id": payload.subject, "jti": payload.jti},
            )
            return None

        # The token is already unusable once its whitelist entry is gone
        try:
            await self._blacklist(payload)
            await self.store.remove_from_set(subject_index_key(payload.subject), payload.jti)
        except RevocationStoreError as e:
            logger.warning(f"Consumed token {payload.jti} but could not blacklist it: {e}")

        return payload

    async def rotate_access_token(
        self,
        refresh_token: str,
        claims: dict[str, Any] | None = None,
    ) -> str | None:
        """Exchange a refresh token for a new access token, consuming it.

        ``claims`` replaces the identity claims carried over from the refresh
        token (callers pass freshly loaded role/permission data).
        """
        payload = await self.consume(refresh_token, TokenType.REFRESH)
        if payload is None:
            return None
        new_claims = payload.identity_claims() if claims is None else claims
        return await self.issue(payload.subject, TokenType.ACCESS, new_claims)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def _blacklist(self, payload: TokenPayload) -> None:
        # verify() still accepts the token for `leeway` seconds past exp
        ttl = payload.remaining_seconds() + self.leeway
        if ttl > 0:
            await self.store.set(blacklist_key(payload.jti), "1", ttl)

    async def revoke(self, token: str) -> bool:
        """Blacklist a token for the rest of its lifetime.

        Best effort: returns False instead of raising when the token cannot be
        verified or the store is unavailable.
        """
        result = await self.verify(token)
        if not result.valid or result.payload is None:
            logger.debug(f"Not revoking token: {result.error}")
            return False
        payload = result.payload

        try:
            await self._blacklist(payload)
            if payload.type.requires_whitelist:
                await self.store.delete(whitelist_key(payload.jti, payload.subject))
                await self.store.remove_from_set(subject_index_key(payload.subject), payload.jti)
        except RevocationStoreError:
            return False
        except Exception:
            logger.exception("Error revoking token")
            return False

        logger.info(
            f"Revoked {payload.type.value} token",
            extra={"user_id": payload.subject, "jti": payload.jti, "action": "revoke_token"},
        )
        return True

    async def revoke_all_for_subject(self, subject: str) -> bool:
        """Revoke every whitelisted token of ``subject``.

        Access tokens are never whitelisted and stay valid until they expire.
        """
        subject = str(subject)
        index_key = subject_index_key(subject)
        try:
            jtis = await self.store.set_members(index_key)
            keys = []
            for jti in sorted(jtis):
                key = whitelist_key(jti, subject)
                remaining = await self.store.ttl(key)
                if remaining > 0:
                    # Redis reports whole seconds, so round up by one
                    await self.store.set(blacklist_key(jti), "1", remaining + 1 + self.leeway)
                keys.append(key)
            await self.store.delete(*keys)
            # Only the members read above; tokens issued meanwhile stay indexed
            await self.store.remove_from_set(index_key, *jtis)
        except RevocationStoreError:
            return False
        except Exception:
            logger.exception(f"Error revoking all tokens for {subject}")
            return False

        logger.info(
            f"Revoked {len(jtis)} token(s) for user",
            extra={"user_id": subject, "action": "revoke_all_tokens"},
        )
        return True
