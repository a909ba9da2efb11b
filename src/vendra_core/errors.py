"""Shared error types for vendra_core.

Backend failures are normalised into ``BackendError`` instances tagged with an
``ErrorKind`` so retry predicates dispatch on a closed set of kinds rather than
probing unknown error shapes.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

UNKNOWN_ERROR_CODE = "UNKNOWN_ERROR"
NOT_FOUND_CODE = "PGRST116"
INSUFFICIENT_PRIVILEGE_CODE = "42501"


class ErrorKind(StrEnum):
    """Closed set of backend failure categories."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure.

    Always retried by ``default_should_retry``.
    """


class BackendError(Exception):
    """Typed failure raised by a backend collaborator.

    Attributes:
        message: Human-readable failure description.
        kind: Failure category.
        code: Normalised backend error code, if the backend supplied one.
        status_code: HTTP-like status associated with the failure.
    """

    default_kind = ErrorKind.UNKNOWN
    default_status_code = 500

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        code: object = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.kind = self.default_kind if kind is None else kind
        self.code = normalize_error_code(code)
        self.status_code = (
            self.default_status_code if status_code is None else status_code
        )
        super().__init__(message)


class BackendAuthError(BackendError):
    """Missing or expired credentials."""

    default_kind = ErrorKind.AUTH
    default_status_code = 401


class BackendPermissionError(BackendError):
    """Authenticated caller lacks the required privilege."""

    default_kind = ErrorKind.PERMISSION
    default_status_code = 403


class BackendNotFoundError(BackendError):
    default_kind = ErrorKind.NOT_FOUND
    default_status_code = 404


class BackendValidationError(BackendError):
    default_kind = ErrorKind.VALIDATION
    default_status_code = 400


class BackendNetworkError(BackendError, TransientError):
    default_kind = ErrorKind.NETWORK
    default_status_code = 503


class BackendTimeoutError(BackendError, TransientError):
    default_kind = ErrorKind.TIMEOUT
    default_status_code = 504


def normalize_error_code(value: object) -> str | None:
    """Return ``value`` as a stripped string code, or ``None`` when absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    normalized = str(value).strip()
    return normalized or None


def error_code_of(error: BaseException) -> str | None:
    """Return the normalised ``code``/``status``/``status_code`` of an error."""
    for attribute in ("code", "status", "status_code"):
        code = normalize_error_code(getattr(error, attribute, None))
        if code is not None:
            return code
    return None


def _payload_fields(
    payload: BaseException | Mapping[str, object],
) -> tuple[str | None, str, str | None]:
    if isinstance(payload, Mapping):
        code = normalize_error_code(payload.get("code"))
        message = payload.get("message")
        status = normalize_error_code(payload.get("status"))
        return code, "" if message is None else str(message), status
    code = normalize_error_code(getattr(payload, "code", None))
    status = normalize_error_code(
        getattr(payload, "status", None) or getattr(payload, "status_code", None)
    )
    message = getattr(payload, "message", None)
    if not isinstance(message, str):
        message = str(payload)
    return code, message, status


def classify_backend_error(
    payload: BaseException | Mapping[str, object],
) -> BackendError:
    """Map a raw backend error payload onto the typed ``BackendError`` taxonomy.

    Args:
        payload: An exception raised by a backend client, or the error mapping
            returned in a backend response body (``code``/``message``/``status``).

    Returns:
        A ``BackendError`` subclass instance. ``BackendError`` inputs are
        returned unchanged.
    """
    if isinstance(payload, BackendError):
        return payload

    code, message, status = _payload_fields(payload)

    if code == NOT_FOUND_CODE:
        return BackendNotFoundError("Resource not found", code=code)
    if code == INSUFFICIENT_PRIVILEGE_CODE:
        return BackendPermissionError(
            "You do not have permission to perform this action", code=code
        )
    if "JWT" in message or "401" in (code, status):
        return BackendAuthError(
            "Session expired. Please sign in again", code=code or status
        )
    if "403" in (code, status):
        return BackendPermissionError(
            "You do not have permission to perform this action", code=code or status
        )
    if isinstance(payload, TimeoutError):
        return BackendTimeoutError(message or "Backend call timed out", code=code)
    if isinstance(payload, OSError):
        return BackendNetworkError(message or "Backend unreachable", code=code)

    return BackendError(
        message or "An unexpected error occurred",
        code=code or status or UNKNOWN_ERROR_CODE,
    )
