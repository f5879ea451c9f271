# =============================================================================
# sync_core/state/background_loop.py
# Event loop on a daemon thread for Streamlit scripts
# =============================================================================
"""
Streamlit reruns the page script synchronously on each interaction, while
the gateway, coordinator and realtime channels live on one asyncio loop.
BackgroundLoop keeps that loop running on a daemon thread so realtime
callbacks keep arriving between reruns, and lets the script block on a
coroutine with run().

Usage:
    loop = BackgroundLoop.get_instance()
    appointments = loop.run(context.appointments.fetch_appointments())
"""

from __future__ import annotations
import asyncio
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Optional

from sync_core.logging import get_logger

logger = get_logger(__name__)


class BackgroundLoop:
    """Singleton asyncio loop running on a daemon thread."""

    _instance: Optional[BackgroundLoop] = None
    _lock = threading.Lock()

    DEFAULT_TIMEOUT = 60.0  # seconds a script waits for one coroutine

    def __init__(self):
        """Create a stopped loop (use get_instance() instead)."""
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @classmethod
    def get_instance(cls) -> BackgroundLoop:
        """Get or create the singleton, started."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = BackgroundLoop()
        cls._instance.start()
        return cls._instance

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        self.start()
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop thread if it is not running."""
        if self.is_running:
            return
        with self._lock:
            if self.is_running:
                return
            self._ready.clear()
            self._thread = threading.Thread(
                target=self._run_forever,
                daemon=True,
                name="SyncEventLoop",
            )
            self._thread.start()
        self._ready.wait()
        logger.debug("Background event loop started")

    def _run_forever(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._ready.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def submit(self, coro: Awaitable[Any]) -> Future:
        """Schedule a coroutine without waiting for it."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the loop and wait for its result.

        Args:
            coro: Coroutine to run
            timeout: Seconds to wait (default DEFAULT_TIMEOUT)

        Returns:
            The coroutine's result; its exception is re-raised here
        """
        future = self.submit(coro)
        try:
            return future.result(timeout=timeout or self.DEFAULT_TIMEOUT)
        except FutureTimeoutError:
            # The coroutine keeps running on the loop; only this wait gives up
            logger.warning("Timed out waiting for background coroutine")
            raise

    def stop(self) -> None:
        """Stop the loop thread."""
        if not self.is_running:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        logger.debug("Background event loop stopped")
