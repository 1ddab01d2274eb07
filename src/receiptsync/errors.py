"""Application error taxonomy and backend error translation.

Every place that needs to recognise a well-known backend condition (a
missing stored procedure, a missing table, a storage policy rejection)
goes through :func:`classify_backend_error`. It prefers the typed
PostgREST/Postgres error code and only falls back to matching on the
message text when the SDK did not give us one.
"""

from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    SERVER = "server"
    CACHE = "cache"
    VALIDATION = "validation"
    FILE = "file"
    PERMISSION = "permission"
    PAYMENT = "payment"
    DATABASE = "database"
    UNKNOWN = "unknown"


class AppError(Exception):
    """Base exception for all errors surfaced to callers.

    Args:
        message: Human readable message, safe to display
        code: Optional machine code (backend error code when known)
        details: Optional extra context
    """

    category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class NetworkError(AppError):
    category = ErrorCategory.NETWORK


class AuthError(AppError):
    category = ErrorCategory.AUTH


class ServerError(AppError):
    category = ErrorCategory.SERVER


class CacheError(AppError):
    category = ErrorCategory.CACHE


class DataValidationError(AppError):
    """Raised when client-side presence/range checks fail."""

    category = ErrorCategory.VALIDATION


class InvalidTransitionError(DataValidationError):
    """Raised when a workflow transition is not allowed from the current state."""


class FileError(AppError):
    category = ErrorCategory.FILE


class AccessDeniedError(AppError):
    category = ErrorCategory.PERMISSION


class PaymentError(AppError):
    category = ErrorCategory.PAYMENT


class DatabaseError(AppError):
    category = ErrorCategory.DATABASE


class UnknownError(AppError):
    category = ErrorCategory.UNKNOWN


class ConfigurationError(AppError):
    """Raised when required settings are missing."""


class GatewayError(DatabaseError):
    """Wraps any failure raised by the backend SDK or its transport.

    The original exception is kept as ``__cause__`` and its message and
    backend code (when the SDK exposes one) are copied onto this error.
    """

    @classmethod
    def wrap(cls, exc: BaseException, operation: str | None = None) -> "GatewayError":
        if isinstance(exc, GatewayError):
            return exc
        message = _message_of(exc)
        details: dict[str, Any] = {"exception_type": type(exc).__name__}
        if operation:
            details["operation"] = operation
        error = cls(message, code=_code_of(exc), details=details)
        error.__cause__ = exc
        return error


class BackendCondition(str, Enum):
    """Well-known backend failure conditions that callers branch on."""

    MISSING_PROCEDURE = "missing_procedure"
    MISSING_TABLE = "missing_table"
    BUCKET_NOT_FOUND = "bucket_not_found"
    ROW_LEVEL_SECURITY = "row_level_security"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    DUPLICATE = "duplicate"
    INVALID_REQUEST = "invalid_request"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


# PostgREST / Postgres / storage codes that identify a condition outright
_CODE_CONDITIONS: dict[str, BackendCondition] = {
    "PGRST202": BackendCondition.MISSING_PROCEDURE,
    "42883": BackendCondition.MISSING_PROCEDURE,
    "PGRST106": BackendCondition.MISSING_TABLE,
    "PGRST205": BackendCondition.MISSING_TABLE,
    "42P01": BackendCondition.MISSING_TABLE,
    "42501": BackendCondition.ROW_LEVEL_SECURITY,
    "23505": BackendCondition.DUPLICATE,
    "409": BackendCondition.DUPLICATE,
    "413": BackendCondition.PAYLOAD_TOO_LARGE,
    "401": BackendCondition.AUTH,
    "PGRST301": BackendCondition.AUTH,
    "PGRST303": BackendCondition.AUTH,
    "invalid_credentials": BackendCondition.AUTH,
}

# Ordered: first match wins
_MESSAGE_CONDITIONS: list[tuple[tuple[str, ...], BackendCondition]] = [
    (("pgrst202", "could not find the function"), BackendCondition.MISSING_PROCEDURE),
    (("pgrst106", "does not exist"), BackendCondition.MISSING_TABLE),
    (("bucket not found",), BackendCondition.BUCKET_NOT_FOUND),
    (("row-level security", "violates policy", "policy"), BackendCondition.ROW_LEVEL_SECURITY),
    (("413", "too large", "payload too large"), BackendCondition.PAYLOAD_TOO_LARGE),
    (("duplicate", "already exists"), BackendCondition.DUPLICATE),
    (("jwt expired", "invalid login credentials", "not authenticated"), BackendCondition.AUTH),
    (("400", "bad request"), BackendCondition.INVALID_REQUEST),
]


def _message_of(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


def _code_of(exc: BaseException) -> str | None:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if value is not None and not callable(value):
            return str(value)
    return None


def classify_backend_error(exc: BaseException) -> BackendCondition:
    """Map an exception to a well-known backend condition.

    Args:
        exc: Any exception raised while talking to the backend

    Returns:
        The matching BackendCondition, or BackendCondition.UNKNOWN
    """
    if isinstance(exc, NetworkError | httpx.TransportError | ConnectionError | TimeoutError):
        return BackendCondition.NETWORK
    if isinstance(exc, GatewayError) and isinstance(
        exc.__cause__, httpx.TransportError | ConnectionError | TimeoutError
    ):
        return BackendCondition.NETWORK

    code = exc.code if isinstance(exc, AppError) else _code_of(exc)
    if code and code in _CODE_CONDITIONS:
        return _CODE_CONDITIONS[code]

    message = _message_of(exc).lower()
    for needles, condition in _MESSAGE_CONDITIONS:
        if any(needle in message for needle in needles):
            return condition
    return BackendCondition.UNKNOWN


def is_missing_procedure(exc: BaseException) -> bool:
    return classify_backend_error(exc) is BackendCondition.MISSING_PROCEDURE


def is_missing_table(exc: BaseException) -> bool:
    return classify_backend_error(exc) is BackendCondition.MISSING_TABLE


_UPLOAD_MESSAGES: dict[BackendCondition, tuple[type[AppError], str]] = {
    BackendCondition.BUCKET_NOT_FOUND: (
        ServerError,
        "Storage bucket not found. Please contact support.",
    ),
    BackendCondition.ROW_LEVEL_SECURITY: (
        AccessDeniedError,
        "Permission denied. Please log in again.",
    ),
    BackendCondition.PAYLOAD_TOO_LARGE: (
        FileError,
        "File too large. Please use a smaller image.",
    ),
    BackendCondition.INVALID_REQUEST: (
        FileError,
        "Invalid file or request. Please try again with a different image.",
    ),
}


def to_upload_error(exc: BaseException) -> AppError:
    """Translate a storage upload failure into a user-facing error."""
    condition = classify_backend_error(exc)
    if condition in _UPLOAD_MESSAGES:
        error_cls, message = _UPLOAD_MESSAGES[condition]
        return error_cls(message, code=condition.value)
    return to_app_error(exc, prefix="Storage upload failed")


def to_app_error(exc: BaseException, prefix: str | None = None) -> AppError:
    """Convert any exception into an AppError suitable for display.

    AppErrors other than raw gateway wrappers are returned unchanged.
    """
    if isinstance(exc, AppError) and not isinstance(exc, GatewayError):
        return exc

    message = _message_of(exc)
    if prefix:
        message = f"{prefix}: {message}"
    code = exc.code if isinstance(exc, AppError) else _code_of(exc)
    condition = classify_backend_error(exc)

    if condition is BackendCondition.NETWORK:
        return NetworkError(
            "Network connection failed. Please check your internet connection.",
            code=code,
        )
    if condition is BackendCondition.AUTH:
        return AuthError("Your session has expired. Please log in again.", code=code)
    if condition is BackendCondition.ROW_LEVEL_SECURITY:
        return AccessDeniedError(
            "You don't have permission to perform this action.", code=code
        )
    if isinstance(exc, GatewayError):
        return DatabaseError(message, code=code, details=exc.details)
    return UnknownError(message, code=code)
