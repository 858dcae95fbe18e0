"""
Renderers

Strategies for putting the engine on screen:
- static: one rich snapshot of the layout and pane states
- live: a rich Live view refreshed every ``refresh_interval_ms``
- interactive: the Textual dashboard with keyboard navigation
"""

from __future__ import annotations

import asyncio
import json
import time
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from termdeck.events import EngineEvent
from termdeck.pane_manager import Pane, PaneState
from termdeck.presets import PANE_CONFIGS

if TYPE_CHECKING:
    from termdeck.engine import DashboardEngine
    from termdeck.layout_manager import PaneRect


class RenderMode(Enum):
    """How the dashboard is displayed"""
    STATIC = "static"
    LIVE = "live"
    INTERACTIVE = "interactive"


STATE_STYLES = {
    PaneState.INITIALIZING: "dim",
    PaneState.LOADING: "cyan",
    PaneState.READY: "white",
    PaneState.UPDATING: "cyan",
    PaneState.ERROR: "red",
    PaneState.COLLAPSED: "dim",
    PaneState.FOCUSED: "bold yellow",
}

MAX_BODY_LINES = 12


# =============================================================================
# Shared pane rendering
# =============================================================================


def pane_title(pane_id: str) -> str:
    config = PANE_CONFIGS.get(pane_id)
    return config.title if config else pane_id.title()


def format_pane_data(data: Any, max_lines: int = MAX_BODY_LINES) -> list[str]:
    """Flatten pane data into display lines."""
    if data is None:
        return []
    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value, default=str)
            lines.append(f"{key}: {value}")
    elif isinstance(data, (list, tuple)):
        lines = [str(item) for item in data]
    else:
        lines = str(data).splitlines()

    if len(lines) > max_lines:
        hidden = len(lines) - max_lines + 1
        lines = lines[: max_lines - 1] + [f"... {hidden} more"]
    return lines


def render_pane_body(pane: Pane | None) -> Text:
    """Body text for a pane: its state, data or error."""
    if pane is None:
        return Text("not registered", style="dim")

    if pane.collapsed:
        return Text("[collapsed]", style="dim")

    body = Text()
    body.append(f"● {pane.state.value}", style=STATE_STYLES.get(pane.state, ""))
    if pane.last_update:
        body.append(f"  updated {time.strftime('%H:%M:%S', time.localtime(pane.last_update))}", style="dim")

    if pane.error:
        body.append(f"\n✗ {pane.error}", style="bold red")

    for line in format_pane_data(pane.data):
        body.append(f"\n{line}")
    return body


def render_pane(rect: PaneRect, pane: Pane | None) -> Panel:
    border = "yellow" if rect.focused else "red" if pane and pane.state is PaneState.ERROR else "blue"
    return Panel(
        render_pane_body(pane),
        title=pane_title(rect.id),
        border_style=border,
        width=max(rect.width, 4),
        height=max(rect.height, 3) if not (pane and pane.collapsed) else 3,
    )


def build_dashboard(engine: DashboardEngine) -> RenderableType:
    """Render the current geometry and pane states as one rich renderable."""
    with engine.performance_monitor.measure("render"):
        geometry = engine.geometry
        preset = engine.layout_manager.current_preset

        header = Text()
        header.append(preset.title, style="bold")
        header.append(f"  {geometry.width}x{geometry.height}", style="dim")
        if geometry.focused_pane:
            header.append(f"  focus: {pane_title(geometry.focused_pane)}", style="yellow")

        rows: list[RenderableType] = [header]
        for row in geometry.rows():
            grid = Table.grid(padding=0)
            for _ in row:
                grid.add_column()
            grid.add_row(*(render_pane(rect, engine.pane_manager.panes.get(rect.id)) for rect in row))
            rows.append(grid)

        if engine.keyboard.help_visible:
            rows.append(Panel("\n".join(engine.keyboard.get_contextual_help()), title="Help"))

        return Group(*rows)


# =============================================================================
# Renderers
# =============================================================================


class Renderer:
    """Base renderer: starts the engine, displays it, shuts it down."""

    mode: RenderMode

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    async def run(self, engine: DashboardEngine, project_root: Path | str | None = None) -> None:
        raise NotImplementedError


class StaticRenderer(Renderer):
    mode = RenderMode.STATIC

    async def run(self, engine: DashboardEngine, project_root: Path | str | None = None) -> None:
        await engine.start(project_root)
        try:
            self.console.print(build_dashboard(engine))
        finally:
            await engine.shutdown()


class LiveRenderer(Renderer):
    """
    Redraws on a timer until an exit is requested.

    Args:
        max_refreshes: Stop after this many redraws (None runs until exit)
    """

    mode = RenderMode.LIVE

    def __init__(self, console: Console | None = None, max_refreshes: int | None = None):
        super().__init__(console)
        self.max_refreshes = max_refreshes
        self.refreshes = 0

    async def run(self, engine: DashboardEngine, project_root: Path | str | None = None) -> None:
        stop = asyncio.Event()
        unsubscribers = [
            engine.events.on(EngineEvent.EXIT_REQUESTED, lambda _: stop.set()),
            engine.events.on(EngineEvent.FORCE_EXIT_REQUESTED, lambda _: stop.set()),
        ]
        interval = engine.config.dashboard.refresh_interval_ms / 1000

        await engine.start(project_root)
        try:
            with Live(build_dashboard(engine), console=self.console, auto_refresh=False) as live:
                while not stop.is_set():
                    try:
                        await asyncio.wait_for(stop.wait(), timeout=interval)
                    except asyncio.TimeoutError:
                        pass

                    width, height = self.console.size
                    if (width, height) != engine.layout_manager.terminal_size:
                        engine.resize(width, height)
                    live.update(build_dashboard(engine), refresh=True)

                    self.refreshes += 1
                    if self.max_refreshes is not None and self.refreshes >= self.max_refreshes:
                        break
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            await engine.shutdown()


class InteractiveRenderer(Renderer):
    mode = RenderMode.INTERACTIVE

    async def run(self, engine: DashboardEngine, project_root: Path | str | None = None) -> None:
        # Lazy import to avoid circular dependency
        from termdeck.app import DashboardApp

        app = DashboardApp(engine, project_root=project_root)
        await app.run_async()


RENDERERS: dict[RenderMode, type[Renderer]] = {
    RenderMode.STATIC: StaticRenderer,
    RenderMode.LIVE: LiveRenderer,
    RenderMode.INTERACTIVE: InteractiveRenderer,
}


def create_renderer(mode: RenderMode | str, console: Console | None = None) -> Renderer:
    """
    Pick the renderer for a mode.

    Raises:
        ValueError: If the mode is unknown
    """
    return RENDERERS[RenderMode(mode)](console)
