# =============================================================================
# sync_core/__init__.py
# Client-side entity store and sync layer
# =============================================================================
"""
sync_core keeps a normalized cache of backend records, applies writes
optimistically with exact rollback, folds realtime changes into the cache
and scopes everything to the signed-in identity.

Usage:
    from sync_core import build_app_context

    context = build_app_context()
    await context.session.sign_in(email, password)
    await context.appointments.fetch_appointments()
"""

from .context import AppContext, UserScope, build_app_context

__version__ = "1.0.0"

__all__ = ["AppContext", "UserScope", "build_app_context", "__version__"]
