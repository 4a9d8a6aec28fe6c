from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that the API layer copies into the error envelope.
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
    """Bearer credentials missing or unusable (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    MFA_LOCKED = "MFA_LOCKED"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TRANSACTION_EXPIRED = "TRANSACTION_EXPIRED"
    TRANSACTION_CONSUMED = "TRANSACTION_CONSUMED"
    INVALID_MFA_CODE = "INVALID_MFA_CODE"
    INVALID_MFA_METHOD = "INVALID_MFA_METHOD"
    PUSH_REJECTED = "PUSH_REJECTED"
    ESIGN_DECLINED = "ESIGN_DECLINED"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    TOKEN_INVALID = "TOKEN_INVALID"


# kind -> (HTTP status, envelope code, caller-visible message)
_KIND_TABLE = {
    ErrorKind.INVALID_CREDENTIALS: (401, "invalid_credentials", "invalid credentials"),
    ErrorKind.ACCOUNT_LOCKED: (423, "account_locked", "account locked"),
    ErrorKind.MFA_LOCKED: (423, "mfa_locked", "mfa locked"),
    ErrorKind.TRANSACTION_NOT_FOUND: (404, "transaction_not_found", "transaction not found"),
    ErrorKind.TRANSACTION_EXPIRED: (410, "transaction_expired", "transaction expired"),
    ErrorKind.TRANSACTION_CONSUMED: (409, "transaction_consumed", "transaction already used"),
    ErrorKind.INVALID_MFA_CODE: (400, "invalid_mfa_code", "invalid mfa code"),
    ErrorKind.INVALID_MFA_METHOD: (400, "validation_error", "invalid mfa method"),
    ErrorKind.PUSH_REJECTED: (400, "push_rejected", "push challenge rejected"),
    ErrorKind.ESIGN_DECLINED: (403, "esign_declined", "esign declined"),
}

TOKEN_ERROR_MESSAGE = "invalid or expired token"


class DomainError(ServiceError):
    """A flow-stopping error carrying its :class:`ErrorKind`."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        status_code, error_code, default_message = _KIND_TABLE.get(
            kind, (401, "invalid_token", TOKEN_ERROR_MESSAGE)
        )
        super().__init__(
            message or default_message,
            status_code=status_code,
            error_code=error_code,
            detail=detail,
        )
        self.kind = kind


class CredentialError(DomainError):
    """Credential gate refused the login; terminal for the attempt."""


class TransactionError(DomainError):
    """Transaction id unknown, expired or already used; restart from the last valid step."""


class MFAError(DomainError):
    """Challenge failed verification."""


class ESignDeclinedError(DomainError):
    def __init__(self, document_id: str) -> None:
        super().__init__(ErrorKind.ESIGN_DECLINED, detail={"document_id": document_id})


class TokenError(DomainError):
    """Token rejected. The message never says why; ``kind`` holds the reason for logs."""

    status_code = 401
    error_code = "invalid_token"

    def __init__(self, kind: ErrorKind, *, detail: Optional[dict] = None) -> None:
        super().__init__(kind, TOKEN_ERROR_MESSAGE, detail=detail)
        self.status_code = 401
        self.error_code = "invalid_token"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ServerError",
    "ErrorKind",
    "DomainError",
    "CredentialError",
    "TransactionError",
    "MFAError",
    "ESignDeclinedError",
    "TokenError",
    "TOKEN_ERROR_MESSAGE",
]
