# =============================================================================
# sync_core/errors/__init__.py
# Centralized Error Handling for the client data layer
# =============================================================================

from .exceptions import (
    SyncCoreError,
    NetworkError,
    RequestTimeoutError,
    AuthorizationError,
    ValidationError,
    MalformedRowError,
    ConflictError,
    NotFoundError,
    IntegrityError,
    InvalidTransitionError,
    UploadCancelledError,
    ConfigurationError,
)

__all__ = [
    "SyncCoreError",
    "NetworkError",
    "RequestTimeoutError",
    "AuthorizationError",
    "ValidationError",
    "MalformedRowError",
    "ConflictError",
    "NotFoundError",
    "IntegrityError",
    "InvalidTransitionError",
    "UploadCancelledError",
    "ConfigurationError",
]
