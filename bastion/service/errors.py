from __future__ import annotations

from typing import Optional


class ConfigError(RuntimeError):
    """Process configuration is unusable; raised at startup, never per request."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the JSON error envelope:
    - unauthorized (401)
    - forbidden (403)
    - csrf_mismatch (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthorizedError(AuthenticationError):
    """No identity on a protected route.

    Browser callers are sent to ``redirect_to`` instead of receiving JSON.
    """

    def __init__(
        self,
        message: str = "authentication required",
        *,
        redirect_to: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.redirect_to = redirect_to


class TokenError(AuthenticationError):
    """Access token could not be trusted."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    """Access token past its ``exp``.

    Kept for the error taxonomy only: ``AuthService.validate_access`` reports
    expiry as an absent identity and never raises this.
    """


class RefreshTokenError(AuthenticationError):
    """Refresh handle could not be redeemed; the client must log in again."""


class RefreshTokenMalformed(RefreshTokenError):
    pass


class RefreshTokenNotFound(RefreshTokenError):
    """No record for the selector: never issued or already consumed."""


class RefreshTokenExpired(RefreshTokenError):
    pass


class ValidatorMismatch(RefreshTokenError):
    """Selector matched but the secret half did not."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        message: str = "forbidden",
        *,
        redirect_to: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.redirect_to = redirect_to


class CsrfMismatchError(ForbiddenError):
    """Submitted CSRF token is absent or does not match the session (403)."""
    error_code = "csrf_mismatch"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ConfigError",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthorizedError",
    "TokenError",
    "MalformedToken",
    "InvalidSignature",
    "TokenExpired",
    "RefreshTokenError",
    "RefreshTokenMalformed",
    "RefreshTokenNotFound",
    "RefreshTokenExpired",
    "ValidatorMismatch",
    "ForbiddenError",
    "CsrfMismatchError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
