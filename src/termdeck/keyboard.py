"""
Keyboard Navigator

Routes key presses to global actions (focus cycling, preset switching,
refresh, help, exit) or to actions of the focused pane. Keys use Textual's
notation: lowercase named keys and modifiers joined with ``+`` in the order
ctrl, shift, alt, meta (``tab``, ``shift+tab``, ``ctrl+r``).
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Union

from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import InvalidPresetError

if TYPE_CHECKING:
    from termdeck.error_handler import ErrorHandler
    from termdeck.layout_manager import LayoutManager
    from termdeck.pane_manager import PaneManager
    from termdeck.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


# =============================================================================
# Shortcut tables
# =============================================================================

GLOBAL_SHORTCUTS: dict[str, str] = {
    # Navigation
    "tab": "focus_next_pane",
    "shift+tab": "focus_previous_pane",
    "q": "exit_dashboard",
    "h": "toggle_help",
    "r": "refresh_all_panes",
    # Layout control
    "1": "set_preset_quick",
    "2": "set_preset_development",
    "3": "set_preset_monitoring",
    "4": "set_preset_debug",
    # Pane operations
    "space": "toggle_pane_collapse",
    "enter": "execute_pane_action",
    "escape": "clear_selection",
    # System
    "ctrl+c": "force_exit",
    "ctrl+r": "hard_refresh",
}

PANE_SHORTCUTS: dict[str, dict[str, str]] = {
    "progress": {
        "a": "advance_phase",
        "p": "report_progress",
        "r": "refresh_progress",
        "space": "toggle_phase_details",
        "enter": "view_phase_details",
    },
    "tasks": {
        "n": "generate_next_task",
        "p": "report_task_progress",
        "c": "complete_task",
        "enter": "view_task_details",
        "up": "select_previous_task",
        "down": "select_next_task",
    },
    "capabilities": {
        "c": "analyze_capabilities",
        "g": "show_gap_analysis",
        "d": "discover_agent",
        "enter": "view_tool_details",
        "up": "select_previous_tool",
        "down": "select_next_tool",
    },
    "logs": {
        "f": "filter_logs",
        "c": "clear_logs",
        "e": "show_errors",
        "enter": "view_log_details",
        "up": "scroll_up",
        "down": "scroll_down",
    },
    "tools": {
        "enter": "execute_selected_tool",
        "i": "show_tool_info",
        "h": "show_tool_help",
        "up": "select_previous_tool",
        "down": "select_next_tool",
    },
}

HELP_TEXT: dict[str, list[str]] = {
    "global": [
        "Global Navigation:",
        "  Tab/Shift+Tab - Navigate between panes",
        "  1/2/3/4 - Switch layout presets",
        "  h - Toggle this help",
        "  q - Quit dashboard",
        "  r - Refresh all panes",
        "",
        "Pane Operations:",
        "  Space - Collapse/expand focused pane",
        "  Enter - Execute pane action",
        "  Escape - Clear selection",
    ],
    "progress": [
        "Progress Pane:",
        "  a - Advance to next phase",
        "  p - Report progress",
        "  r - Refresh progress data",
        "  Space - Toggle phase details",
        "  Enter - View phase details",
    ],
    "tasks": [
        "Tasks Pane:",
        "  n - Generate next task",
        "  p - Report task progress",
        "  c - Complete current task",
        "  ↑/↓ - Navigate task list",
        "  Enter - View task details",
    ],
    "capabilities": [
        "Capabilities Pane:",
        "  c - Analyze capabilities",
        "  g - Show gap analysis",
        "  d - Discover agent",
        "  ↑/↓ - Navigate tools",
        "  Enter - View tool details",
    ],
    "logs": [
        "Logs Pane:",
        "  f - Filter log level",
        "  c - Clear logs",
        "  e - Show errors only",
        "  ↑/↓ - Scroll logs",
        "  Enter - View log details",
    ],
    "tools": [
        "Tools Pane:",
        "  Enter - Execute selected tool",
        "  i - Show tool information",
        "  h - Show tool help",
        "  ↑/↓ - Navigate tools",
    ],
}


# =============================================================================
# Key normalisation
# =============================================================================

MODIFIER_ORDER = ("ctrl", "shift", "alt", "meta")

_MODIFIER_ALIASES = {
    "c": "ctrl",
    "ctrl": "ctrl",
    "control": "ctrl",
    "s": "shift",
    "shift": "shift",
    "a": "alt",
    "alt": "alt",
    "option": "alt",
    "m": "meta",
    "meta": "meta",
    "cmd": "meta",
}

_KEY_ALIASES = {
    " ": "space",
    "\t": "tab",
    "\r": "enter",
    "\n": "enter",
    "\x1b": "escape",
    "\x03": "ctrl+c",
    "\x12": "ctrl+r",
    "return": "enter",
    "esc": "escape",
    "backtab": "shift+tab",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
}

Modifiers = Union[Iterable[str], Mapping[str, bool], None]


def normalize_key(raw: str, modifiers: Modifiers = None) -> str:
    """
    Convert raw key input to a canonical combo string.

    Accepts control characters, Textual key names (``shift+tab``), terminal
    style combos (``C-c``, ``S-Tab``) and an optional separate modifier set.

    Examples:
        >>> normalize_key("\\t")
        'tab'
        >>> normalize_key("C-c")
        'ctrl+c'
        >>> normalize_key("r", {"ctrl": True})
        'ctrl+r'
    """
    text = _KEY_ALIASES.get(raw, raw)
    if len(text) > 1:
        text = _KEY_ALIASES.get(text.lower(), text)

    mods: set[str] = set()
    key = text
    if len(text) > 1:
        separator = "+" if "+" in text[:-1] else ("-" if "-" in text[:-1] else None)
        if separator:
            *prefix, key = text.split(separator)
            for part in prefix:
                name = _MODIFIER_ALIASES.get(part.lower())
                if name is None:
                    raise ValueError(f"Unknown modifier {part!r} in {raw!r}")
                mods.add(name)

    if isinstance(modifiers, Mapping):
        mods.update(name for name, active in modifiers.items() if active)
    elif modifiers is not None:
        mods.update(modifiers)
    mods = {_MODIFIER_ALIASES.get(m.lower(), m.lower()) for m in mods}

    if len(key) > 1:
        key = key.lower()
        key = _KEY_ALIASES.get(key, key)
        if "+" in key:
            # Alias expanded to a combo of its own (backtab -> shift+tab)
            *extra, key = key.split("+")
            mods.update(extra)

    ordered = [m for m in MODIFIER_ORDER if m in mods]
    return "+".join([*ordered, key])


# =============================================================================
# Navigator
# =============================================================================

PaneActionHandler = Callable[[str, str], Union[Any, Awaitable[Any]]]


@dataclass
class KeyboardMetrics:
    total_key_presses: int = 0
    commands_executed: int = 0
    average_response_ms: float = 0.0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_key_presses": self.total_key_presses,
            "commands_executed": self.commands_executed,
            "average_response_ms": self.average_response_ms,
            "error_count": self.error_count,
        }


@dataclass
class KeyPress:
    raw: str
    combo: str
    timestamp: float = field(default_factory=time.time)


class KeyboardNavigator:
    """Dispatches key presses to global or pane-scoped actions."""

    RESPONSE_ALPHA = 0.1
    MAX_KEY_HISTORY = 10

    def __init__(
        self,
        layout_manager: LayoutManager,
        pane_manager: PaneManager,
        events: EventEmitter | None = None,
        performance_monitor: PerformanceMonitor | None = None,
        error_handler: ErrorHandler | None = None,
    ):
        self.layout_manager = layout_manager
        self.pane_manager = pane_manager
        self.events = events or EventEmitter()
        self.performance_monitor = performance_monitor
        self.error_handler = error_handler

        self.help_visible = False
        self.key_history: deque[KeyPress] = deque(maxlen=self.MAX_KEY_HISTORY)
        self.metrics = KeyboardMetrics()
        self._pane_handlers: dict[tuple[str, str], PaneActionHandler] = {}

        self._global_actions: dict[str, Callable[[], Awaitable[bool]]] = {
            "focus_next_pane": self.focus_next_pane,
            "focus_previous_pane": self.focus_previous_pane,
            "exit_dashboard": self.exit_dashboard,
            "toggle_help": self.toggle_help,
            "refresh_all_panes": self.refresh_all_panes,
            "set_preset_quick": lambda: self.set_layout_preset("quick"),
            "set_preset_development": lambda: self.set_layout_preset("development"),
            "set_preset_monitoring": lambda: self.set_layout_preset("monitoring"),
            "set_preset_debug": lambda: self.set_layout_preset("debug"),
            "toggle_pane_collapse": self.toggle_pane_collapse,
            "execute_pane_action": self.execute_pane_default_action,
            "clear_selection": self.clear_selection,
            "force_exit": self.force_exit,
            "hard_refresh": self.hard_refresh,
        }

    @property
    def focused_pane(self) -> str | None:
        return self.layout_manager.focused_pane

    def on_pane_action(self, pane_id: str, action: str, handler: PaneActionHandler) -> None:
        """Register a handler called with (pane_id, action) for a pane shortcut."""
        self._pane_handlers[(pane_id, action)] = handler

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_key_press(self, raw_input: str, modifiers: Modifiers = None) -> bool:
        """
        Handle one key press. Never raises.

        Returns:
            True if an action handled the key
        """
        started = time.perf_counter()
        self.metrics.total_key_presses += 1
        combo = raw_input

        try:
            combo = normalize_key(raw_input, modifiers)
            self.key_history.append(KeyPress(raw_input, combo))

            action = GLOBAL_SHORTCUTS.get(combo)
            if action is not None:
                result = await self._execute_global_action(action)
                self._record_response(started, combo)
                return result

            focused = self.focused_pane
            if focused is not None:
                pane_action = PANE_SHORTCUTS.get(focused, {}).get(combo)
                if pane_action is not None:
                    result = await self._execute_pane_action(focused, pane_action, combo)
                    self._record_response(started, combo)
                    return result

            self.events.emit(EngineEvent.UNKNOWN_KEY, {"key": combo, "focused_pane": focused})
            return False

        except Exception as e:
            self.metrics.error_count += 1
            logger.warning(f"Key {combo!r} failed: {e}")
            self.events.emit(EngineEvent.KEYBOARD_ERROR, {"key": combo, "error": str(e)})
            if self.error_handler is not None:
                await self.error_handler.handle_error(e, {"type": "keyboard", "key": combo})
            return False

    async def _execute_global_action(self, action: str) -> bool:
        self.metrics.commands_executed += 1
        return await self._global_actions[action]()

    async def _execute_pane_action(self, pane_id: str, action: str, combo: str) -> bool:
        self.metrics.commands_executed += 1
        self.events.emit(EngineEvent.PANE_ACTION, {"pane_id": pane_id, "action": action, "key": combo})

        handler = self._pane_handlers.get((pane_id, action))
        if handler is not None:
            result = handler(pane_id, action)
            if inspect.isawaitable(result):
                await result
        return True

    def _record_response(self, started: float, combo: str) -> None:
        elapsed = (time.perf_counter() - started) * 1000
        alpha = self.RESPONSE_ALPHA
        self.metrics.average_response_ms = self.metrics.average_response_ms * (1 - alpha) + elapsed * alpha
        if self.performance_monitor is not None:
            self.performance_monitor.record_keyboard_response(elapsed, key=combo)

    # =========================================================================
    # Global actions
    # =========================================================================

    def _focus(self, target: str) -> None:
        self.layout_manager.set_focused_pane(target)
        for pane_id in self.layout_manager.calculate_layout().pane_ids:
            if pane_id != target:
                self.pane_manager.set_focus(pane_id, False)
        self.pane_manager.set_focus(target, True)

    async def focus_next_pane(self) -> bool:
        target = self.layout_manager.get_next_pane()
        self._focus(target)
        self.events.emit(EngineEvent.FOCUS_CHANGED, {"pane_id": target, "direction": "next"})
        return True

    async def focus_previous_pane(self) -> bool:
        target = self.layout_manager.get_previous_pane()
        self._focus(target)
        self.events.emit(EngineEvent.FOCUS_CHANGED, {"pane_id": target, "direction": "previous"})
        return True

    async def toggle_help(self) -> bool:
        self.help_visible = not self.help_visible
        self.events.emit(EngineEvent.HELP_TOGGLED, {"visible": self.help_visible})
        return True

    def get_contextual_help(self) -> list[str]:
        """Global help followed by the focused pane's section."""
        help_lines = list(HELP_TEXT["global"])
        focused = self.focused_pane
        if focused in HELP_TEXT:
            help_lines += ["", *HELP_TEXT[focused]]
        return help_lines

    async def set_layout_preset(self, name: str) -> bool:
        try:
            applied = self.layout_manager.set_preset(name)
        except InvalidPresetError as e:
            logger.warning(str(e))
            return False

        self.pane_manager.sync_with_layout(self.layout_manager.calculate_layout())
        self.events.emit(EngineEvent.PRESET_CHANGED, {"preset": applied, "requested": name})
        return True

    async def toggle_pane_collapse(self) -> bool:
        focused = self.focused_pane
        if focused is None:
            return False
        return self.pane_manager.toggle_collapse(focused)

    async def refresh_all_panes(self) -> bool:
        await self.pane_manager.refresh_all_panes()
        self.events.emit(EngineEvent.GLOBAL_REFRESH)
        return True

    async def hard_refresh(self) -> bool:
        """Drop queued updates and reload every pane, refreshable or not."""
        self.events.emit(EngineEvent.HARD_REFRESH)
        self.pane_manager.cancel_pending_updates()
        for pane_id in list(self.pane_manager.panes):
            await self.pane_manager.refresh_pane(pane_id)
        self.events.emit(EngineEvent.GLOBAL_REFRESH)
        return True

    async def execute_pane_default_action(self) -> bool:
        focused = self.focused_pane
        if focused is None:
            return False
        return await self._execute_pane_action(focused, "default", "enter")

    async def clear_selection(self) -> bool:
        self.events.emit(EngineEvent.SELECTION_CLEARED)
        return True

    async def exit_dashboard(self) -> bool:
        self.events.emit(EngineEvent.EXIT_REQUESTED, {"reason": "user_request"})
        return True

    async def force_exit(self) -> bool:
        self.events.emit(EngineEvent.FORCE_EXIT_REQUESTED, {"reason": "force_quit"})
        return True

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics.to_dict(),
            "help_visible": self.help_visible,
            "key_history_size": len(self.key_history),
            "current_focus": self.focused_pane,
        }

    def clear(self) -> None:
        self.key_history.clear()
        self._pane_handlers.clear()
