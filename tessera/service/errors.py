from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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
    """Credential, session or identity check failed (401).

    The message is always drawn from a small fixed vocabulary; the specific
    reason is logged, never returned.
    """
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Internal failures of the hasher and token codec. The engines translate these
# into one of the public kinds above before anything reaches a client.


class InvalidInput(ValueError):
    """A secret handed to the credential hasher was empty or too short."""


class ConfigError(RuntimeError):
    """Cryptographic configuration is below the accepted floor."""


class TokenError(Exception):
    pass


class TokenExpired(TokenError):
    pass


class TokenInvalid(TokenError):
    pass


# Client-facing messages for AuthenticationError
INVALID_CREDENTIALS = "invalid credentials"
ACCOUNT_UNAVAILABLE = "account unavailable"
INVALID_TOKEN = "invalid token"
SESSION_EXPIRED = "session expired"
IDENTITY_VERIFICATION_FAILED = "identity verification failed"
EMAIL_EXISTS_PASSWORD = "email_exists_password"
IDENTITY_SIGN_IN_REQUIRED = "use identity sign-in"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidInput",
    "ConfigError",
    "TokenError",
    "TokenExpired",
    "TokenInvalid",
    "INVALID_CREDENTIALS",
    "ACCOUNT_UNAVAILABLE",
    "INVALID_TOKEN",
    "SESSION_EXPIRED",
    "IDENTITY_VERIFICATION_FAILED",
    "EMAIL_EXISTS_PASSWORD",
    "IDENTITY_SIGN_IN_REQUIRED",
]
