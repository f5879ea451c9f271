# =============================================================================
# sync_core/state/streamlit_session.py
# One AppContext per Streamlit session
# =============================================================================
"""
Usage (in a page script):
    from sync_core.state import get_app_context, run

    context = get_app_context()
    if not context.session.is_authenticated:
        st.stop()
    tasks = run(context.tasks.fetch_tasks())
"""

from __future__ import annotations
from typing import Any, Awaitable, Optional

import streamlit as st

from sync_core.config import SyncSettings
from sync_core.context import AppContext, build_app_context
from sync_core.errors import SyncCoreError
from sync_core.errors.handlers import handle_error
from sync_core.logging import get_logger
from .background_loop import BackgroundLoop

logger = get_logger(__name__)

APP_CONTEXT_KEY = "_sync_app_context"


def run(coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
    """Run a coroutine on the shared background loop and wait for it."""
    return BackgroundLoop.get_instance().run(coro, timeout)


def get_app_context(settings: Optional[SyncSettings] = None) -> AppContext:
    """
    Get the session's AppContext, creating it on first use.

    A persisted backend session is restored on creation; failing to restore
    leaves the user signed out.
    """
    if APP_CONTEXT_KEY not in st.session_state:
        context = build_app_context(settings)
        try:
            run(context.session.restore())
        except SyncCoreError as e:
            handle_error(e, show_user_message=False)
        st.session_state[APP_CONTEXT_KEY] = context
        logger.info("App context created for Streamlit session")
    return st.session_state[APP_CONTEXT_KEY]


def reset_app_context() -> None:
    """Close and forget the session's AppContext."""
    context = st.session_state.pop(APP_CONTEXT_KEY, None)
    if context is not None:
        run(context.close())
        logger.info("App context closed")
