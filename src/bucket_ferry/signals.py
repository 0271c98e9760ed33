# src/bucket_ferry/signals.py
"""
Helpers for graceful shutdown of a running migration.

This module provides a context manager that captures OS signals (SIGINT,
SIGTERM) and translates the first one into an `asyncio.Event` plus an
optional callback, typically `MigrationEngine.cancel`, so the job pauses
with a consistent checkpoint instead of dying mid-part.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Callable, Dict, Optional, Set

logger: logging.Logger = logging.getLogger(__name__)

_SignalHandler = Callable[[int, Optional[FrameType]], None]


class GracefulShutdown:
    """
    An async context manager that captures POSIX signals for graceful shutdown.

    The first received signal sets the event and calls `on_shutdown` on the
    event loop. A second signal triggers an immediate, forceful exit.
    Previous signal handlers are restored on exit.
    """

    def __init__(self, on_shutdown: Optional[Callable[[], Any]] = None) -> None:
        """
        Initialize the shutdown manager.

        Args:
            on_shutdown (Callable[[], Any], optional): Called once, on the
                event loop, when the first signal arrives.
        """
        self._event: asyncio.Event = asyncio.Event()
        self._on_shutdown: Optional[Callable[[], Any]] = on_shutdown
        self._old_handlers: Dict[signal.Signals, _SignalHandler] = {}

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    def _trigger(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        if self._on_shutdown is not None:
            self._on_shutdown()

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers signal handlers and returns the shutdown event.

        Returns:
            asyncio.Event: The event that will be set when a handled signal
                is received.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        signals_to_handle: Set[signal.Signals] = {
            signal.SIGINT,
            signal.SIGTERM,
        }

        def _handler(sig: int, _: Optional[FrameType]) -> None:
            if self._event.is_set():
                logger.critical("Received second shutdown signal. Forcing immediate exit.")
                os._exit(1)
            logger.warning(
                f"Received shutdown signal: {signal.strsignal(sig)}. "
                "Pausing the job; run it again to resume."
            )
            loop.call_soon_threadsafe(self._trigger)

        for sig in signals_to_handle:
            try:
                # signal.signal must be called from the main thread
                self._old_handlers[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not set handler for {sig.name}: {e}")

        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Restores original signal handlers."""
        for sig, handler in self._old_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._old_handlers.clear()
