# =============================================================================
# sync_core/validation/forms.py
# Form-level validation shared by screens and stores
# =============================================================================
"""
Validators raise ValidationError carrying the offending field; the message is
meant to be shown to the user verbatim.
"""

from __future__ import annotations
import re
from datetime import datetime
from typing import Optional

from sync_core.errors import ValidationError
from sync_core.models import ResultType

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
MAX_MESSAGE_LENGTH = 5000
MAX_DISPLAY_NAME_LENGTH = 100


def validate_credentials(
    email: str,
    password: str,
    confirm_password: Optional[str] = None,
) -> None:
    """
    Validate a sign-in or sign-up form.

    Args:
        email: Email address
        password: Password
        confirm_password: Confirmation field (sign-up only)
    """
    if not email or not EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("Please enter a valid email address", field="email")
    if confirm_password is not None and password != confirm_password:
        raise ValidationError("Passwords do not match", field="confirm_password")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            field="password",
        )


def validate_display_name(display_name: str) -> str:
    """Returns the trimmed name."""
    name = (display_name or "").strip()
    if not name:
        raise ValidationError("Full name is required", field="display_name")
    if len(name) > MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError(
            f"Full name must be at most {MAX_DISPLAY_NAME_LENGTH} characters",
            field="display_name",
        )
    return name


def validate_time_range(start: datetime, end: datetime) -> None:
    if start is None:
        raise ValidationError("Start time is required", field="start_time")
    if end is None:
        raise ValidationError("End time is required", field="end_time")
    if end <= start:
        raise ValidationError("End time must be after start time", field="end_time")


def validate_message_content(content: str) -> str:
    """Returns the trimmed content."""
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty", field="content")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"Message must be at most {MAX_MESSAGE_LENGTH} characters",
            field="content",
        )
    return text


def validate_reel_form(
    title: str,
    code_snippet: str,
    code_language: str,
    result_type: ResultType,
    result_content: str = "",
    has_image: bool = False,
) -> None:
    """
    Validate the create-reel form.

    An image result needs either an uploaded image or an image URL; HTML
    embeds and videos need their content.
    """
    if not (title or "").strip():
        raise ValidationError("Title is required", field="title")
    if not (code_snippet or "").strip():
        raise ValidationError("Code snippet is required", field="code_snippet")
    if not (code_language or "").strip():
        raise ValidationError("Code language is required", field="code_language")

    result_type = ResultType(result_type)
    has_content = bool((result_content or "").strip())
    if result_type is ResultType.IMAGE:
        if not has_image and not has_content:
            raise ValidationError(
                "Please either upload an image or provide an image URL",
                field="result_content",
            )
    elif result_type is not ResultType.TEXT and not has_content:
        label = "HTML content" if result_type is ResultType.HTML_EMBED else "Video URL"
        raise ValidationError(f"{label} is required", field="result_content")


def validate_upload(file_name: str, content_type: str, allowed_prefix: Optional[str] = None) -> None:
    if not (file_name or "").strip():
        raise ValidationError("No file selected", field="file")
    if allowed_prefix and not (content_type or "").startswith(allowed_prefix):
        kind = allowed_prefix.rstrip("/")
        raise ValidationError(f"File must be an {kind}" if kind[:1] in "aeiou" else f"File must be a {kind}", field="file")
