# backend/app/core/exceptions.py
"""
Closed set of failure kinds raised by the authentication core.

Each exception carries its kind, the HTTP status the transport should use,
and whether the caller may retry. Protocol failures collapse into a single
UnauthorizedError whose message never says which check failed.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    CONFLICT = "conflict"
    VALIDATION_FAILURE = "validation_failure"
    UNAUTHORIZED = "unauthorized"
    LOCKED = "locked"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ZeroLockError(Exception):
    """Base class for every expected failure of the service."""

    kind: ErrorKind = ErrorKind.FATAL
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Something went wrong"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        # Internal context for logs only, never rendered to clients
        self.details = details or {}


class ConflictError(ZeroLockError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = "Resource already exists"


class ValidationFailure(ZeroLockError):
    kind = ErrorKind.VALIDATION_FAILURE
    status_code = 400
    default_message = "Invalid request parameters"


class UnauthorizedError(ZeroLockError):
    """Unknown identifier, bad proof, missing or expired session."""

    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "Invalid credentials"

    def __init__(self, *, details: Optional[Dict[str, Any]] = None):
        # The message is fixed so callers cannot tell the failure reasons apart
        super().__init__(self.default_message, details=details)


class AccountLockedError(ZeroLockError):
    kind = ErrorKind.LOCKED
    status_code = 423
    default_message = "Account is locked due to too many failed login attempts"


class TransientError(ZeroLockError):
    """Storage or connectivity failure; the caller may retry."""

    kind = ErrorKind.TRANSIENT
    status_code = 503
    retryable = True
    default_message = "Service temporarily unavailable"


class CryptoError(ZeroLockError):
    """Cryptographic primitive failure. Never retried."""

    kind = ErrorKind.FATAL
    status_code = 500
    default_message = "Cryptographic operation failed"
