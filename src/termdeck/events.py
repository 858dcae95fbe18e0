"""In-process event bus shared by the engine services."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EngineEvent(Enum):
    """Events emitted by the engine services"""
    # Layout / navigation
    PRESET_CHANGED = "preset_changed"
    FOCUS_CHANGED = "focus_changed"
    HELP_TOGGLED = "help_toggled"
    SELECTION_CLEARED = "selection_cleared"
    GLOBAL_REFRESH = "global_refresh"
    HARD_REFRESH = "hard_refresh"
    PANE_ACTION = "pane_action"
    UNKNOWN_KEY = "unknown_key"
    KEYBOARD_ERROR = "keyboard_error"
    EXIT_REQUESTED = "exit_requested"
    FORCE_EXIT_REQUESTED = "force_exit_requested"

    # Panes
    PANE_REGISTERED = "pane_registered"
    PANE_UNREGISTERED = "pane_unregistered"
    PANE_STATE_CHANGED = "pane_state_changed"
    PANE_COLLAPSE_TOGGLED = "pane_collapse_toggled"
    PANE_UPDATE_FAILED = "pane_update_failed"

    # Change watcher
    INITIALIZATION_ERROR = "initialization_error"
    WATCHER_FAILED = "watcher_failed"
    WATCHER_RESTARTED = "watcher_restarted"
    UPDATE_BATCH_COMPLETE = "update_batch_complete"
    HEALTH_CHECK = "health_check"

    # Performance
    PERFORMANCE_ALERT = "performance_alert"

    # Errors and recovery
    ERROR_OCCURRED = "error_occurred"
    ERROR_RECOVERED = "error_recovered"
    ERROR_ESCALATED = "error_escalated"
    RETRY_OPERATION = "retry_operation"
    FALLBACK_OPERATION = "fallback_operation"
    RESET_OPERATION = "reset_operation"


Listener = Callable[[dict[str, Any]], None]


class EventEmitter:
    """
    Synchronous publish/subscribe hub.

    Listeners receive a single payload dict. A listener that raises is logged
    and skipped; the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._listeners: dict[EngineEvent, list[Listener]] = {}

    def on(self, event: EngineEvent, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Function that removes the listener again
        """
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: EngineEvent, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: EngineEvent, payload: dict[str, Any] | None = None) -> int:
        """
        Deliver an event to its listeners.

        Returns:
            Number of listeners that were called
        """
        payload = payload or {}
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Error in {event.value} listener: {e}")
        return len(listeners)

    def listener_count(self, event: EngineEvent) -> int:
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        self._listeners.clear()
