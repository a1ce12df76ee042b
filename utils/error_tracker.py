"""Scan error taxonomy and centralized unhandled exception tracking."""

from __future__ import annotations

import os
import signal
import sys
import traceback
from typing import Any, Callable, List, Optional

from .logger import Logger


class ScanError(Exception):
    """Base class for recoverable scanning errors."""


class ReadbackFailure(ScanError):
    """Host copy of the depth buffer failed or returned an unexpected format."""


class InvalidGeometry(ScanError, ValueError):
    """Malformed frame or geometry input (shapes, missing matrices)."""


class InvalidAnchor(ScanError, ValueError):
    """Anchor without volume bounds or without the expected label."""


class NoAnchorFound(ScanError):
    """Scene service returned no anchor with the requested label."""


class RecordingError(ScanError):
    """A recorded capture on disk is missing files or malformed."""


class ErrorTracker:
    """Installable global exception hook that logs uncaught errors."""

    logger = Logger.get_logger("utils.error_tracker")
    _installed = False
    _orig_hook: Optional[Callable[..., None]] = None
    _cleanup_funcs: List[Callable[[], None]] = []
    _keyboard_listener: Any = None

    @classmethod
    def register_cleanup(cls, func: Callable[[], None]) -> None:
        """Register a cleanup function executed on fatal errors."""
        cls._cleanup_funcs.append(func)

    @classmethod
    def _run_cleanup(cls) -> None:
        """Execute all registered cleanup callbacks."""

        for func in cls._cleanup_funcs:
            try:
                func()
            except Exception as e:
                cls.logger.error(f"Cleanup failed: {e}")
        cls.stop_keyboard_listener()

    @classmethod
    def install_excepthook(cls) -> None:
        """Log unhandled exceptions through the project logger."""
        if cls._installed:
            return

        cls._orig_hook = sys.excepthook

        def _hook(exc_type, exc, tb) -> None:
            message = "".join(traceback.format_exception(exc_type, exc, tb))
            cls.logger.error(f"Unhandled exception:\n{message}")
            cls._run_cleanup()
            if cls._orig_hook:
                cls._orig_hook(exc_type, exc, tb)

        sys.excepthook = _hook
        cls._installed = True
        cls.logger.debug("Global exception hook installed")

    @classmethod
    def install_signal_handlers(cls) -> None:
        """Shutdown gracefully on SIGINT or SIGTERM."""

        def _handler(signum, frame) -> None:
            cls.logger.info(f"Received signal {signum}")
            cls._run_cleanup()
            raise SystemExit(1)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    @classmethod
    def install_keyboard_listener(cls, stop_key: str = "esc") -> None:
        """Start a background listener that exits on ``stop_key``."""

        if cls._keyboard_listener is not None:
            return
        try:
            from .keyboard import GlobalKeyListener
        except Exception as e:
            cls.logger.warning(f"Keyboard listener unavailable: {e}")
            return

        def _on_stop() -> None:
            """Handle hotkey press by running cleanup and exiting."""
            cls.logger.info(f"Stop key {stop_key} pressed")
            cls._run_cleanup()
            os._exit(1)

        cls._keyboard_listener = GlobalKeyListener({f"<{stop_key}>": _on_stop})
        cls._keyboard_listener.start()
        cls.logger.debug(f"Keyboard listener installed for key: {stop_key}")

    @classmethod
    def stop_keyboard_listener(cls) -> None:
        """Stop the background keyboard listener if running."""

        if cls._keyboard_listener is not None:
            try:
                cls._keyboard_listener.stop()
            finally:
                cls._keyboard_listener = None
                cls.logger.debug("Keyboard listener stopped")

    @classmethod
    def report(cls, exc: Exception) -> None:
        """Log an exception with full traceback to logger only."""
        tb = exc.__traceback__
        if tb:
            formatted = "".join(traceback.format_exception(type(exc), exc, tb))
        else:
            stack = "".join(traceback.format_stack())
            formatted = f"{type(exc).__name__}: {exc}\nTraceback (most recent call last):\n{stack}"
        cls.logger.error(formatted)
