"""
Graceful shutdown handler for the monitor.

Handles SIGTERM/SIGINT on the running event loop. When a signal
arrives:
1. The shutdown event is set, so periodic tasks stop scheduling cycles
2. Cleanup callbacks run in reverse order of registration
3. HTTP clients and the Redis connection are closed cleanly
"""

import asyncio
import inspect
import signal
from typing import Awaitable, Callable, Optional, Union
import structlog

logger = structlog.get_logger(__name__)


Cleanup = Callable[[], Union[None, Awaitable[None]]]


class GracefulShutdownHandler:
    """
    Handles SIGTERM/SIGINT for graceful shutdown of an asyncio service.

    Usage:
        handler = GracefulShutdownHandler()
        handler.register_cleanup(dispatcher.aclose)
        handler.install()

        await handler.wait()
        await handler.run_cleanup()
    """

    SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(self):
        self._event = asyncio.Event()
        self._cleanup_callbacks: list[Cleanup] = []
        self._installed_on: Optional[asyncio.AbstractEventLoop] = None
        self._cleaned_up = False

        logger.info("graceful_shutdown_handler_initialized")

    @property
    def shutdown_requested(self) -> bool:
        return self._event.is_set()

    def register_cleanup(self, callback: Cleanup) -> None:
        """
        Register a cleanup callback to run on shutdown.

        Callbacks may be plain functions or coroutine functions and run
        in reverse order of registration (LIFO).
        """
        self._cleanup_callbacks.append(callback)

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install signal handlers on the running loop."""
        loop = loop or asyncio.get_running_loop()

        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.warning("signal_handler_unavailable", signal=sig.name)

        self._installed_on = loop
        logger.info("signal_handlers_installed")

    def uninstall(self) -> None:
        if self._installed_on is None:
            return
        for sig in self.SIGNALS:
            try:
                self._installed_on.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        self._installed_on = None

    def request_shutdown(self, reason: str = "requested") -> None:
        """Set the shutdown event. Safe to call more than once."""
        if not self._event.is_set():
            logger.info("shutdown_signal_received", signal=reason)
        self._event.set()

    async def wait(self) -> None:
        """Block until shutdown has been requested."""
        await self._event.wait()

    async def run_cleanup(self) -> None:
        """Run cleanup callbacks once, newest first. Errors are logged per callback."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        logger.info("running_cleanup_callbacks", count=len(self._cleanup_callbacks))

        for callback in reversed(self._cleanup_callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("cleanup_callback_error", error=str(e), callback=getattr(callback, "__qualname__", repr(callback)))

        self.uninstall()
        logger.info("graceful_shutdown_complete")
