from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for engine exceptions that callers map onto responses.

    Each exception class defines both a transport status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
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


class NotFoundError(ServiceError):
    """Requested principal or session not found (404)."""
    status_code = 404
    error_code = "not_found"


NOT_AUTHENTICATED = "not authenticated"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is an internal code for logs and tests; the message shown to the
    caller is chosen by the raising site.
    """
    status_code = 401
    error_code = "unauthorized"
    reason: str = "unauthenticated"

    def __init__(
        self,
        message: str = NOT_AUTHENTICATED,
        *,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        if reason is not None:
            self.reason = reason


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity or wrong password."""
    reason = "invalid_credentials"


class AccountLockedError(AuthenticationError):
    """Too many failed attempts; the identity is temporarily locked."""
    reason = "account_locked"


class AccountDisabledError(AuthenticationError):
    reason = "account_disabled"


class AccountDeletedError(AuthenticationError):
    reason = "account_deleted"


class TokenInvalidError(AuthenticationError):
    """Token could not be accepted."""
    reason = "token_invalid"


class TokenMalformedError(TokenInvalidError):
    reason = "token_malformed"


class TokenExpiredError(TokenInvalidError):
    reason = "token_expired"


class TokenRevokedError(AuthenticationError):
    """Session id deny-listed or token version superseded."""
    reason = "token_revoked"


class SessionNotFoundError(AuthenticationError):
    reason = "session_not_found"
