"""
Textual dashboard application

Lays out one widget per pane from the engine's geometry and forwards every
key press to the KeyboardNavigator. Engine events (preset, focus, pane
state) trigger a redraw; resizes go to the engine so presets degrade on
small terminals.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Header, Static

from termdeck.engine import DashboardEngine
from termdeck.events import EngineEvent
from termdeck.layout_manager import PaneRect
from termdeck.pane_manager import Pane, PaneState
from termdeck.renderers import pane_title, render_pane_body

# Engine events that change what is on screen
REDRAW_EVENTS = (
    EngineEvent.PRESET_CHANGED,
    EngineEvent.FOCUS_CHANGED,
    EngineEvent.HELP_TOGGLED,
    EngineEvent.PANE_REGISTERED,
    EngineEvent.PANE_UNREGISTERED,
    EngineEvent.PANE_STATE_CHANGED,
    EngineEvent.PANE_COLLAPSE_TOGGLED,
)


class PaneWidget(Static):
    """One pane of the dashboard"""

    DEFAULT_CSS = """
    PaneWidget {
        border: round $primary;
        padding: 0 1;
        overflow: hidden;
    }

    PaneWidget.focused {
        border: thick $accent;
    }

    PaneWidget.error {
        border: round $error;
    }

    PaneWidget.collapsed {
        color: $text-muted;
    }
    """

    def __init__(self, rect: PaneRect, **kwargs: Any) -> None:
        super().__init__(id=f"pane-{rect.id}", **kwargs)
        self.pane_id = rect.id
        self.border_title = pane_title(rect.id)
        self.apply_rect(rect)

    def apply_rect(self, rect: PaneRect) -> None:
        self.styles.width = rect.width
        self.styles.height = rect.height
        self.set_class(rect.focused, "focused")

    def show(self, pane: Pane | None) -> None:
        self.set_class(pane is not None and pane.state is PaneState.ERROR, "error")
        collapsed = pane is not None and pane.collapsed
        self.set_class(collapsed, "collapsed")
        if collapsed:
            self.styles.height = 3
        self.update(render_pane_body(pane))


class DashboardApp(App):
    """
    Interactive dashboard

    Layout follows the active preset: single, triple (three columns), quad
    (2x2) or full (three columns over two). Keys 1-4 switch presets, Tab
    cycles focus, h toggles help and q quits.
    """

    TITLE = "termdeck"
    SUB_TITLE = "Dynamic Terminal Layout Engine"

    DEFAULT_CSS = """
    #dashboard {
        height: 1fr;
        overflow: hidden;
    }

    .pane-row {
        height: auto;
    }

    #help {
        display: none;
        dock: right;
        width: 44;
        border: round $secondary;
        padding: 0 1;
        background: $panel;
    }

    #help.visible {
        display: block;
    }
    """

    # Priority bindings win over Textual's own tab and ctrl+c handling
    BINDINGS = [
        Binding("tab", "forward_key('tab')", "Next pane", show=True, priority=True),
        Binding("shift+tab", "forward_key('shift+tab')", "Prev pane", show=False, priority=True),
        Binding("ctrl+c", "forward_key('ctrl+c')", "Force quit", show=False, priority=True),
        Binding("q", "forward_key('q')", "Quit", show=True, priority=True),
        Binding("h", "forward_key('h')", "Help", show=True, priority=True),
        Binding("r", "forward_key('r')", "Refresh", show=True, priority=True),
    ]

    def __init__(
        self,
        engine: DashboardEngine,
        project_root: Path | str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.engine = engine
        self.project_root = project_root
        self._pane_widgets: dict[str, PaneWidget] = {}
        self._layout_key: tuple[Any, ...] | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._sync_scheduled = False

    def compose(self) -> ComposeResult:
        yield Header()
        yield Vertical(id="dashboard")
        yield Static(id="help")
        yield Footer()

    async def on_mount(self) -> None:
        """Start the engine and draw the first layout"""
        self.engine.resize(self.size.width, self.size.height)
        await self.engine.start(self.project_root)

        for event in REDRAW_EVENTS:
            self._unsubscribers.append(self.engine.events.on(event, self._schedule_sync))
        self._unsubscribers += [
            self.engine.events.on(EngineEvent.EXIT_REQUESTED, lambda _: self.exit()),
            self.engine.events.on(EngineEvent.FORCE_EXIT_REQUESTED, lambda _: self.exit(return_code=130)),
            self.engine.events.on(EngineEvent.WATCHER_FAILED, self._on_watcher_failed),
            self.engine.events.on(EngineEvent.ERROR_ESCALATED, self._on_error_escalated),
        ]

        if self.engine.watcher_error is not None:
            self.notify(str(self.engine.watcher_error), title="Live updates disabled", severity="warning")

        await self.sync_view()

    async def on_unmount(self) -> None:
        """Cleanup when app is unmounted"""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.engine.shutdown()

    # =========================================================================
    # Input
    # =========================================================================

    async def action_forward_key(self, key: str) -> None:
        await self.engine.handle_key(key)

    async def on_key(self, event: events.Key) -> None:
        event.stop()
        event.prevent_default()
        await self.engine.handle_key(event.key)

    def on_resize(self, event: events.Resize) -> None:
        self.engine.resize(event.size.width, event.size.height)
        self._schedule_sync()

    # =========================================================================
    # Drawing
    # =========================================================================

    def _schedule_sync(self, payload: dict[str, Any] | None = None) -> None:
        if not self._sync_scheduled:
            self._sync_scheduled = True
            self.call_later(self.sync_view)

    async def sync_view(self) -> None:
        """Bring the widgets in line with the engine's geometry and pane states"""
        self._sync_scheduled = False
        with self.engine.performance_monitor.measure("render_textual"):
            geometry = self.engine.geometry
            layout_key = (geometry.kind, geometry.width, geometry.height, tuple(geometry.pane_ids))

            if layout_key != self._layout_key:
                await self._remount(geometry.rows())
                self._layout_key = layout_key

            for rect in geometry.panes:
                widget = self._pane_widgets.get(rect.id)
                if widget is not None:
                    widget.apply_rect(rect)
                    widget.show(self.engine.pane_manager.panes.get(rect.id))

            help_panel = self.query_one("#help", Static)
            help_panel.set_class(self.engine.keyboard.help_visible, "visible")
            if self.engine.keyboard.help_visible:
                help_panel.update("\n".join(self.engine.keyboard.get_contextual_help()))

            self.sub_title = self.engine.layout_manager.current_preset.title

    async def _remount(self, rows: list[list[PaneRect]]) -> None:
        dashboard = self.query_one("#dashboard", Vertical)
        await dashboard.remove_children()

        self._pane_widgets = {}
        containers = []
        for row in rows:
            widgets = [PaneWidget(rect) for rect in row]
            self._pane_widgets.update((w.pane_id, w) for w in widgets)
            containers.append(Horizontal(*widgets, classes="pane-row"))
        await dashboard.mount_all(containers)

    def get_pane_widget(self, pane_id: str) -> PaneWidget | None:
        return self._pane_widgets.get(pane_id)

    # =========================================================================
    # Notifications
    # =========================================================================

    def _on_watcher_failed(self, payload: dict[str, Any]) -> None:
        panes = ", ".join(payload.get("panes", []))
        self.notify(
            f"Watching {payload.get('path')} failed; refresh {panes} manually with r",
            title="Watcher failed",
            severity="warning",
        )

    def _on_error_escalated(self, payload: dict[str, Any]) -> None:
        record = payload["record"]
        self.notify(record.classification.user_message, title="Critical error", severity="error")
