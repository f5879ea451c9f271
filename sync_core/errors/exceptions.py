# =============================================================================
# sync_core/errors/exceptions.py
# Custom Exception Hierarchy for the client data layer
# =============================================================================

from typing import Optional, Dict, Any


class SyncCoreError(Exception):
    """
    Base exception for all data-layer errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "NET_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    default_code = "SYNC_000"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
        }


# =============================================================================
# TRANSPORT EXCEPTIONS
# =============================================================================

class NetworkError(SyncCoreError):
    """Raised when the backend cannot be reached. Transient; reads may retry."""

    default_code = "NET_001"
    retryable = True

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation

        super().__init__(message=message, details=details, **kwargs)


class RequestTimeoutError(NetworkError):
    """Raised when a backend call does not resolve within the request timeout"""

    default_code = "NET_002"

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout is not None:
            details["timeout"] = timeout

        super().__init__(message=message, details=details, **kwargs)


class AuthorizationError(SyncCoreError):
    """Raised when the caller is not allowed to perform an operation"""

    default_code = "AUTH_001"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        role: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if kind:
            details["kind"] = kind
        if role:
            details["role"] = role

        kwargs.setdefault("recoverable", False)
        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# DATA EXCEPTIONS
# =============================================================================

class ValidationError(SyncCoreError):
    """Raised when a payload or form violates an entity invariant"""

    default_code = "DATA_001"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if expected:
            details["expected"] = expected
        if actual:
            details["actual"] = actual

        super().__init__(message=message, details=details, **kwargs)

    @property
    def field(self) -> Optional[str]:
        return self.details.get("field")


class MalformedRowError(SyncCoreError):
    """Raised when a backend row cannot be decoded into an entity"""

    default_code = "DATA_002"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        column: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if kind:
            details["kind"] = kind
        if column:
            details["column"] = column

        super().__init__(message=message, details=details, **kwargs)


class ConflictError(SyncCoreError):
    """Raised on a uniqueness violation (duplicate like, duplicate conversation)"""

    default_code = "DATA_003"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if kind:
            details["kind"] = kind
        if constraint:
            details["constraint"] = constraint

        super().__init__(message=message, details=details, **kwargs)


class NotFoundError(SyncCoreError):
    """Raised when an entity vanished server-side since the last cache read"""

    default_code = "DATA_004"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if kind:
            details["kind"] = kind
        if entity_id:
            details["entity_id"] = entity_id

        super().__init__(message=message, details=details, **kwargs)


class IntegrityError(SyncCoreError):
    """Raised when related entities disagree (message vs. conversation)"""

    default_code = "DATA_005"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        related_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity_id:
            details["entity_id"] = entity_id
        if related_id:
            details["related_id"] = related_id

        super().__init__(message=message, details=details, **kwargs)


class InvalidTransitionError(SyncCoreError):
    """Raised when a status change would move out of a terminal state"""

    default_code = "DATA_006"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if current:
            details["current"] = current
        if target:
            details["target"] = target

        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# STORAGE EXCEPTIONS
# =============================================================================

class UploadCancelledError(SyncCoreError):
    """Raised when an object-storage upload is cancelled by the caller"""

    default_code = "STORAGE_001"

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        loaded: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        if loaded is not None:
            details["loaded"] = loaded

        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(SyncCoreError):
    """Raised when configuration is invalid or missing"""

    default_code = "CONFIG_001"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            details=details,
            recoverable=False,
            **kwargs,
        )
