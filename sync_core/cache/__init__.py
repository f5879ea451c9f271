# =============================================================================
# sync_core/cache/__init__.py
# Entity Cache
# =============================================================================

from .entity_cache import EntityCache, CacheChange, CacheObserver, order_records

__all__ = ["EntityCache", "CacheChange", "CacheObserver", "order_records"]
