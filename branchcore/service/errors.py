from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a transport-neutral ``status_code`` and a stable
    ``error_code`` so a transport layer can map them without inspecting
    messages:
    - unauthorized (401)
    - forbidden (403)
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
    """Caller input is malformed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialFormatError(AuthenticationError):
    """Token is malformed, unsigned or carries an unusable payload."""
    error_code = "invalid_token"


class InvalidSignatureError(InvalidCredentialFormatError):
    """Token signature does not match the signing key."""
    error_code = "invalid_signature"


class KindMismatchError(InvalidCredentialFormatError):
    """Token is valid but of a different kind than expected."""
    error_code = "token_kind_mismatch"


class TokenExpiredError(AuthenticationError):
    """Token lifetime elapsed; the caller may re-authenticate."""
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    """Token was explicitly revoked and can never be honored again."""
    error_code = "token_revoked"


BlacklistedError = TokenRevokedError


class SessionSupersededError(TokenRevokedError):
    """Presented session is no longer the principal's active one."""
    error_code = "session_superseded"


class TokenNotFoundError(AuthenticationError):
    """No stored row matches the presented token."""
    error_code = "token_not_found"


class NoActiveSessionError(AuthenticationError):
    """Principal has no active session."""
    error_code = "no_active_session"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a concurrent login won the session slot (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SequenceExhaustedError(ServerError):
    """Identifier allocation ran out of retries with no fallback allowed."""
    error_code = "sequence_exhausted"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialFormatError",
    "InvalidSignatureError",
    "KindMismatchError",
    "TokenExpiredError",
    "TokenRevokedError",
    "BlacklistedError",
    "SessionSupersededError",
    "TokenNotFoundError",
    "NoActiveSessionError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "SequenceExhaustedError",
]
