# =============================================================================
# sync_core/state/__init__.py
# Streamlit session binding
# =============================================================================

from .background_loop import BackgroundLoop
from .streamlit_session import APP_CONTEXT_KEY, get_app_context, reset_app_context, run

__all__ = [
    "BackgroundLoop",
    "APP_CONTEXT_KEY",
    "get_app_context",
    "reset_app_context",
    "run",
]
