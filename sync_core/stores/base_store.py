# =============================================================================
# sync_core/stores/base_store.py
# Base Store Class with Common Functionality
# =============================================================================

from __future__ import annotations
from abc import ABC
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sync_core.cache import EntityCache
from sync_core.errors import SyncCoreError
from sync_core.errors.handlers import handle_error
from sync_core.logging import LogContext, get_logger
from sync_core.models import Entity, EntityKind, Filter
from sync_core.session import SessionContext
from sync_core.sync import MutationCoordinator, RealtimeReconciler


@dataclass
class ServiceResult:
    """
    Standard result container for store operations called from screens.

    `retryable` tells the screen whether to offer a retry affordance.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    retryable: bool = False

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, data: Any = None, metadata: Dict[str, Any] = None) -> ServiceResult:
        """Create a successful result"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str = "UNKNOWN",
        metadata: Dict[str, Any] = None,
        retryable: bool = False,
    ) -> ServiceResult:
        """Create a failed result"""
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            metadata=metadata,
            retryable=retryable,
        )

    @classmethod
    def from_exception(cls, e: Exception) -> ServiceResult:
        """Create a failed result from an exception"""
        if isinstance(e, SyncCoreError):
            return cls(
                success=False,
                error=e.message,
                error_code=e.code,
                metadata=e.details,
                retryable=e.retryable,
            )
        return cls(
            success=False,
            error=str(e),
            error_code="EXCEPTION",
        )


class BaseStore(ABC):
    """
    Abstract base class for domain stores.

    Provides common functionality:
    - Logging
    - Query authorization through the session
    - Cached listing through the coordinator
    - Result standardization for screens

    Usage:
        class MyStore(BaseStore):
            async def fetch_things(self):
                return await self._load(EntityKind.REEL)

        result = await store.safe_call("Loading things", store.fetch_things)
    """

    def __init__(
        self,
        coordinator: MutationCoordinator,
        session: SessionContext,
        reconciler: Optional[RealtimeReconciler] = None,
    ):
        self.coordinator = coordinator
        self.session = session
        self.reconciler = reconciler
        self.logger = get_logger(self.__class__.__name__)

    @property
    def cache(self) -> EntityCache:
        return self.coordinator.cache

    def log_operation(self, operation: str) -> LogContext:
        """
        Create a logging context for an operation.

        Usage:
            with self.log_operation("Booking appointment"):
                ...
        """
        return LogContext(self.logger, operation)

    async def _load(
        self,
        kind: EntityKind,
        filter: Optional[Filter] = None,
        force: bool = False,
    ) -> List[Entity]:
        """Authorized, cached listing."""
        scoped = self.session.authorize_query(kind, filter)
        return await self.coordinator.load(kind, scoped, force=force)

    async def _watch(self, kind: EntityKind, filter: Optional[Filter] = None) -> None:
        if self.reconciler is None:
            self.logger.debug(f"No reconciler; {kind.value} changes are not watched")
            return
        await self.reconciler.watch(kind, self.session.authorize_query(kind, filter))

    async def safe_call(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs,
    ) -> ServiceResult:
        """
        Await a store coroutine with error handling and logging.

        Args:
            operation: Description of the operation
            func: Coroutine function to await
            *args, **kwargs: Arguments to pass to func

        Returns:
            ServiceResult with success/failure status
        """
        with self.log_operation(operation):
            try:
                result = await func(*args, **kwargs)
                return ServiceResult.ok(result)
            except SyncCoreError as e:
                handle_error(e, show_user_message=False)
                return ServiceResult.from_exception(e)
            except Exception as e:
                self.logger.error(f"{operation} failed: {e}", exc_info=True)
                return ServiceResult.fail(str(e))

