from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class EmailInUseError(ServiceError):
    """Registration attempted with an email that already has an account (400)."""
    status_code = 400
    error_code = "email_in_use"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""
    status_code = 400
    error_code = "invalid_credentials"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenMissingError(AuthenticationError):
    """No access token on a protected request."""
    error_code = "token_missing"


class TokenInvalidError(AuthenticationError):
    """Access token present but malformed, expired, or badly signed."""
    error_code = "token_invalid"


class RefreshTokenError(AuthenticationError):
    """Base for refresh-path rejections.

    ``reason`` is the internal classification that always goes to the logs;
    ``error_code`` is what the client sees. Tamper signals share the public
    code of an unknown token so they do not tell an attacker what was detected.
    """

    error_code = "invalid_refresh_token"
    reason = "invalid_refresh_token"


class InvalidRefreshTokenError(RefreshTokenError):
    """Refresh token not present in the store (never issued, rotated, or logged out)."""


class ExpiredRefreshTokenError(RefreshTokenError):
    error_code = "expired_refresh_token"
    reason = "expired_refresh_token"


class CorruptedRefreshTokenError(RefreshTokenError):
    """Stored token whose signature no longer verifies."""
    reason = "corrupted_refresh_token"


class TokenMismatchError(RefreshTokenError):
    """Signed user id disagrees with the user id on the stored row."""
    reason = "token_mismatch"


class RefreshUserNotFoundError(RefreshTokenError):
    error_code = "user_not_found"
    reason = "user_not_found"


class InvalidLogoutTokenError(AuthenticationError):
    """Logout called with a refresh token that is not in the store."""
    error_code = "invalid_logout_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, time_left: int) -> None:
        super().__init__(message, detail={"timeLeft": time_left})
        self.time_left = time_left


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RefreshError(ServerError):
    """Unexpected failure inside the refresh path; carries no internal detail."""
    error_code = "refresh_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "EmailInUseError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "TokenMissingError",
    "TokenInvalidError",
    "RefreshTokenError",
    "InvalidRefreshTokenError",
    "ExpiredRefreshTokenError",
    "CorruptedRefreshTokenError",
    "TokenMismatchError",
    "RefreshUserNotFoundError",
    "InvalidLogoutTokenError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "RefreshError",
]
