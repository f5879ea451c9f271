# =============================================================================
# sync_core/errors/handlers.py
# Error Surfacing Utilities for screens
# =============================================================================

from __future__ import annotations
import traceback
from typing import Optional
import streamlit as st

from sync_core.logging import get_logger
from .exceptions import (
    SyncCoreError,
    AuthorizationError,
    ValidationError,
)

logger = get_logger(__name__)


def is_retryable(error: BaseException) -> bool:
    """True for transient failures where a screen should offer "Retry"."""
    return isinstance(error, SyncCoreError) and error.retryable


def user_message(error: BaseException, fallback: Optional[str] = None) -> str:
    """
    Message to show for an error.

    Validation messages are shown verbatim (the caller can fix them);
    authorization failures ask the user to sign in again.
    """
    if isinstance(error, ValidationError):
        return error.message
    if isinstance(error, AuthorizationError):
        return f"{error.message}. Please sign in again."
    if isinstance(error, SyncCoreError):
        return fallback or error.message
    return fallback or str(error) or "Unexpected error"


def handle_error(
    error: BaseException,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message_override: Optional[str] = None,
) -> None:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        show_user_message: Whether to display the error via st.error / st.warning
        log_error: Whether to log the error
        user_message_override: Custom message to show instead of the error's own
    """
    message = user_message(error, fallback=user_message_override)

    if isinstance(error, SyncCoreError):
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        if isinstance(error, SyncCoreError):
            logger.warning(f"[{code}] {error.message}", extra={"details": details})
        else:
            logger.error(f"[{code}] {message}", extra={"details": details}, exc_info=error)

    if show_user_message:
        if is_retryable(error):
            st.warning(f"{message}. Check your connection and retry.")
        elif recoverable:
            st.error(f"Error: {message}")
        else:
            st.error(f"Critical Error: {message}")

        if details and st.session_state.get("debug_mode", False):
            with st.expander("Error Details", expanded=False):
                st.json(details)


class ErrorContext:
    """
    Context manager that surfaces typed failures of a screen action.

    Usage:
        with ErrorContext("Sending message"):
            run(context.messages.send_message(conversation_id, text))

        # On error, logs and shows the message; the cache has already been
        # rolled back by the coordinator.
    """

    def __init__(
        self,
        operation: str,
        suppress: bool = True,
        show_success: bool = False,
        success_message: Optional[str] = None,
    ):
        self.operation = operation
        self.suppress = suppress
        self.show_success = show_success
        self.success_message = success_message
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            self.error = exc_val
            if isinstance(exc_val, SyncCoreError):
                handle_error(exc_val)
            else:
                handle_error(
                    exc_val,
                    user_message_override=f"Error during: {self.operation}",
                )
            # Only typed failures are safe to swallow here
            return self.suppress and isinstance(exc_val, SyncCoreError)

        logger.debug(f"Completed: {self.operation}")
        if self.show_success:
            st.success(self.success_message or f"{self.operation} completed")
        return False
