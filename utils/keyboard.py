# utils/keyboard.py
"""Global hotkeys feeding discrete press events into the scan tick loop."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, List

from pynput import keyboard
from .logger import Logger

KeyAction = Callable[[], None]

# Default bindings for the desktop replay: press events -> workflow entry points
SCAN_HOTKEYS: Dict[str, str] = {
    "<space>": "start",
    "<enter>": "stop",
    "r": "reset",
}


class GlobalKeyListener:
    """Listen for global hotkeys on a pynput background thread."""

    def __init__(
        self, hotkeys: Dict[str, KeyAction], *, suppress: bool = False
    ) -> None:
        """Set up hotkey callbacks and configure pynput listener."""

        self.logger = Logger.get_logger("keyboard")
        self.hotkeys = hotkeys
        self.listener = keyboard.GlobalHotKeys(hotkeys, suppress=suppress)
        self.listener.daemon = True

    def start(self) -> None:
        """Start listening for configured hotkeys."""
        self.listener.start()
        self.logger.debug(
            f"GlobalKeyListener started with keys: {list(self.hotkeys)}"
        )

    def stop(self) -> None:
        """Stop the hotkey listener."""
        try:
            self.listener.stop()
        finally:
            self.logger.debug("GlobalKeyListener stopped")


class InputQueue:
    """
    Thread-safe queue of press events.

    pynput invokes callbacks on its own thread; the scan core is
    single-threaded, so callbacks only enqueue event names and the tick loop
    drains them.
    """

    def __init__(self) -> None:
        self._events: Deque[str] = deque()
        self._lock = threading.Lock()

    def push(self, event: str) -> None:
        with self._lock:
            self._events.append(event)

    def drain(self) -> List[str]:
        with self._lock:
            out = list(self._events)
            self._events.clear()
        return out


def bind_scan_hotkeys(
    queue: InputQueue, bindings: Dict[str, str] | None = None
) -> GlobalKeyListener:
    """Create (not start) a listener that pushes bound events into ``queue``."""
    bindings = bindings or SCAN_HOTKEYS

    def _make(event: str) -> KeyAction:
        return lambda: queue.push(event)

    return GlobalKeyListener({k: _make(ev) for k, ev in bindings.items()})
