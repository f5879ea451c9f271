# =============================================================================
# sync_core/validation/__init__.py
# Form validation
# =============================================================================

from .forms import (
    validate_credentials,
    validate_display_name,
    validate_time_range,
    validate_message_content,
    validate_reel_form,
    validate_upload,
)

__all__ = [
    "validate_credentials",
    "validate_display_name",
    "validate_time_range",
    "validate_message_content",
    "validate_reel_form",
    "validate_upload",
]
