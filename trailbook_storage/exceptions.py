"""
Custom exceptions for trailbook storage.

All repositories, stores and the migration pipeline raise these
exceptions so callers can classify failures consistently:

- validation errors are never retried
- transient infrastructure errors are retried under backoff
- permanent infrastructure errors are surfaced immediately
"""


class TrailbookStorageError(Exception):
    """Base exception for all trailbook storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TrailbookStorageError):
    """Raised when a caller-supplied argument is structurally invalid."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Invalid {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class StorageIOError(TrailbookStorageError):
    """Raised when a local storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"{operation} failed on local storage"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class TransientStorageError(TrailbookStorageError):
    """Raised when a remote operation fails for a reason worth retrying.

    Covers timeouts, throttling and temporary service unavailability.
    """

    def __init__(
        self,
        operation: str,
        cause: Exception | None = None,
        status_code: int | None = None,
    ):
        details: dict = {"operation": operation}
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
        message = f"Transient failure during {operation}"
        if cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.operation = operation
        self.cause = cause
        self.status_code = status_code


class StorageConnectionError(TrailbookStorageError):
    """A remote store could not be reached or set up.

    Not named ConnectionError, which would shadow the builtin.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Cannot reach {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class AuthenticationError(TrailbookStorageError):
    """A remote store refused the configured credentials."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"{endpoint} rejected the credentials", details)
        self.endpoint = endpoint
        self.reason = reason


class PermissionDeniedError(TrailbookStorageError):
    """The user may not touch this record (wrong owner, or the backend said 403)."""

    def __init__(self, user_id: str, resource: str, reason: str):
        details = {"user_id": user_id, "resource": resource, "reason": reason}
        super().__init__(
            f"Permission denied for user {user_id} on {resource}: {reason}",
            details,
        )
        self.user_id = user_id
        self.resource = resource
        self.reason = reason


class RecordNotFoundError(TrailbookStorageError):
    """Raised when a hike, observation or asset does not exist."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}", {"kind": kind, "record_id": record_id})
        self.kind = kind
        self.record_id = record_id


class MalformedRecordError(TrailbookStorageError):
    """Raised when stored data cannot be decoded into a domain record."""

    def __init__(self, kind: str, record_id: str, reason: str):
        details = {"kind": kind, "record_id": record_id, "reason": reason}
        super().__init__(f"Malformed {kind} {record_id}: {reason}", details)
        self.kind = kind
        self.record_id = record_id
        self.reason = reason


class FeatureUnavailableError(TrailbookStorageError):
    """Raised when a feature needs an account but the user is a guest."""

    def __init__(self, feature: str, reason: str):
        super().__init__(reason, {"feature": feature})
        self.feature = feature
        self.reason = reason


class ResultNotReadyError(TrailbookStorageError):
    """Raised when a value is requested from a Loading result."""

    def __init__(self, message: str = "Result is still loading"):
        super().__init__(message)


class MigrationError(TrailbookStorageError):
    """Raised inside the migration pipeline for failures that abort the whole run."""

    def __init__(self, message: str, retryable: bool = True, cause: Exception | None = None):
        details: dict = {"retryable": retryable}
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.retryable = retryable
        self.cause = cause


# Errors that describe a permanent condition; retrying cannot help.
PERMANENT_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    AuthenticationError,
    PermissionDeniedError,
    RecordNotFoundError,
    MalformedRecordError,
    FeatureUnavailableError,
)
