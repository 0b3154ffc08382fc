"""Authentication error taxonomy shared by the API and the client pipeline.

Every error carries a stable ``code`` that is sent on the wire, so the client
can rebuild the same exception from a 401/403 body.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from schoolauth.core.tokens import TokenPair


class AuthError(Exception):
    """Base class for authentication and session failures."""

    code = "auth_error"
    status_code = 401
    recoverable = False
    default_detail = "Authentication failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    default_detail = "Invalid email or password"


class FirstLoginRequired(AuthError):
    code = "first_login_required"
    status_code = 403
    default_detail = "Password setup is required before signing in"


class AccountInactive(AuthError):
    code = "account_inactive"
    default_detail = "Account is deactivated"


class InsufficientRole(AuthError):
    code = "insufficient_role"
    status_code = 403
    default_detail = "Insufficient privileges"


class TokenExpired(AuthError):
    """Access token past its expiry; recoverable through one refresh."""

    code = "token_expired"
    recoverable = True
    default_detail = "Access token expired"


class TokenInvalidSignature(AuthError):
    code = "invalid_token"
    default_detail = "Invalid token"


class RefreshTokenReused(AuthError):
    """A rotated-away refresh token was presented; the session is revoked."""

    code = "reused"
    default_detail = "Refresh token reuse detected; session revoked"


class RefreshTokenExpired(AuthError):
    code = "expired"
    default_detail = "Refresh token expired"


class SessionRevoked(AuthError):
    code = "revoked"
    default_detail = "Session revoked"


class RefreshTokenStale(AuthError):
    """Lost a concurrent rotation race; the winning pair is attached when known."""

    code = "stale"
    recoverable = True
    default_detail = "Refresh token already rotated"

    def __init__(self, detail: str | None = None, *, replacement: "TokenPair | None" = None) -> None:
        super().__init__(detail)
        self.replacement = replacement


class NetworkFailure(AuthError):
    """Transport-level failure reaching the API (timeouts included)."""

    code = "network_failure"
    status_code = 503
    default_detail = "Network failure"


class SessionEnded(AuthError):
    """Client-side signal that the session is gone and the user must sign in again."""

    code = "session_ended"
    default_detail = "Session ended"

    def __init__(self, detail: str | None = None, *, reason: str = "unauthenticated") -> None:
        super().__init__(detail)
        self.reason = reason


# Rejections from the refresh endpoint, keyed by their wire code.
REFRESH_REJECTIONS: dict[str, type[AuthError]] = {
    error.code: error
    for error in (RefreshTokenReused, RefreshTokenExpired, SessionRevoked, RefreshTokenStale, TokenInvalidSignature)
}


def error_for_code(code: str | None) -> type[AuthError]:
    """Map a wire error code back to its exception class."""
    for error in (
        InvalidCredentials,
        FirstLoginRequired,
        AccountInactive,
        InsufficientRole,
        TokenExpired,
        *REFRESH_REJECTIONS.values(),
    ):
        if error.code == code:
            return error
    return AuthError
