"""Service-layer exceptions shared by the auth, token and role services."""


class AuthError(Exception):
    """Base authentication error."""

    pass


class InvalidCredentialsError(AuthError):
    """Invalid email or password."""

    pass


class UserInactiveError(AuthError):
    """User account is deactivated."""

    pass


class UserExistsError(AuthError):
    """Email or username already registered."""

    pass


class TokenError(AuthError):
    """JWT token error."""

    pass


class TokenGenerationError(TokenError):
    """A token could not be signed or registered.

    Issuance has no degraded mode, so this always propagates to the caller.
    """

    pass


class InvalidTokenError(TokenError):
    """JWT token is invalid, expired, revoked or of the wrong type."""

    pass


class RoleError(Exception):
    """Base role management error."""

    pass


class RoleNotFoundError(RoleError):
    """No role with the given name."""

    pass


class UserNotFoundError(RoleError):
    """No user with the given id."""

    pass
