# =============================================================================
# sync_core/session/__init__.py
# Session / Identity Context
# =============================================================================

from .identity_context import AuthState, SessionContext, IdentityListener

__all__ = ["AuthState", "SessionContext", "IdentityListener"]
