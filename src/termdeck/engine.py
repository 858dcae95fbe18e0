"""
Dashboard Engine

Builds the layout, pane, keyboard, watcher, performance and error services
around one shared event bus and wires error recovery back into the panes.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine

from termdeck.change_watcher import ChangeWatcher
from termdeck.config import TermdeckConfig
from termdeck.error_handler import ErrorHandler
from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import WatcherInitializationError
from termdeck.keyboard import KeyboardNavigator, Modifiers
from termdeck.layout_manager import LayoutGeometry, LayoutManager, get_terminal_size
from termdeck.pane_manager import DataProvider, PaneManager
from termdeck.performance_monitor import PerformanceMonitor
from termdeck.presets import BUILTIN_PRESETS

logger = logging.getLogger(__name__)


class DashboardEngine:
    """
    Facade over the dashboard services.

    Usage:
        engine = DashboardEngine(config)
        await engine.start(project_root)
        await engine.handle_key("tab")
        await engine.shutdown()
    """

    def __init__(
        self,
        config: TermdeckConfig | None = None,
        terminal_size: tuple[int, int] | None = None,
        preset: str | None = None,
        providers: dict[str, DataProvider] | None = None,
    ):
        self.config = config or TermdeckConfig()
        self.events = EventEmitter()

        self.performance_monitor = PerformanceMonitor(self.config.performance, self.events)
        self.error_handler = ErrorHandler(self.config.errors, self.events, self.performance_monitor)
        self.layout_manager = LayoutManager(
            presets=dict(BUILTIN_PRESETS),
            terminal_size=terminal_size or get_terminal_size(),
            preset=preset or self.config.dashboard.default_preset,
        )
        self.pane_manager = PaneManager(
            self.config.updates,
            self.events,
            self.error_handler,
            self.performance_monitor,
            providers,
        )
        self.keyboard = KeyboardNavigator(
            self.layout_manager,
            self.pane_manager,
            self.events,
            self.performance_monitor,
            self.error_handler,
        )
        self.change_watcher = ChangeWatcher(
            self.pane_manager,
            self.config.watcher,
            self.config.updates,
            self.events,
            self.error_handler,
            self.performance_monitor,
        )

        self.project_root: Path | None = None
        self.watcher_error: WatcherInitializationError | None = None
        self._recovery_tasks: set[asyncio.Task[Any]] = set()
        self._started = False

        self.events.on(EngineEvent.RETRY_OPERATION, self._on_retry)
        self.events.on(EngineEvent.RESET_OPERATION, self._on_reset)
        self.events.on(EngineEvent.ERROR_ESCALATED, self._on_escalated)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, project_root: Path | str | None = None) -> None:
        """
        Start background services and register the panes of the current layout.

        When a project root is given the change watcher is started on it. A
        project without the expected directories runs without live updates.
        """
        if self._started:
            return

        await self.performance_monitor.start()
        self.error_handler.install_global_handlers()

        self.pane_manager.sync_with_layout(self.layout_manager.calculate_layout())
        await self.pane_manager.wait_until_initialized()

        if project_root is not None:
            self.project_root = Path(project_root)
            try:
                await self.change_watcher.initialize(self.project_root)
            except WatcherInitializationError as e:
                self.watcher_error = e
                logger.warning(f"Live updates disabled: {e}")

        startup_ms = self.performance_monitor.mark_startup_complete()
        self._started = True
        logger.info(f"Dashboard started in {startup_ms:.0f}ms with preset '{self.layout_manager.preset}'")

    async def shutdown(self) -> None:
        if self.change_watcher.is_running:
            await self.change_watcher.shutdown()
        await self.pane_manager.shutdown()

        tasks = list(self._recovery_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._recovery_tasks.clear()

        await self.performance_monitor.stop()
        self.error_handler.uninstall_global_handlers()
        self._started = False

    # =========================================================================
    # Layout
    # =========================================================================

    @property
    def geometry(self) -> LayoutGeometry:
        return self.layout_manager.calculate_layout()

    def resize(self, width: int, height: int) -> str:
        """
        Apply a terminal resize, switching to a smaller preset if needed.

        Returns:
            Name of the preset in effect
        """
        before = self.layout_manager.preset
        applied = self.layout_manager.update_terminal_size(width, height)
        self.pane_manager.sync_with_layout(self.layout_manager.calculate_layout())
        if applied != before:
            self.events.emit(
                EngineEvent.PRESET_CHANGED,
                {"preset": applied, "requested": before, "reason": "resize"},
            )
        return applied

    def set_preset(self, name: str) -> str:
        """
        Switch presets.

        Raises:
            InvalidPresetError: If the name is unknown
        """
        applied = self.layout_manager.set_preset(name)
        self.pane_manager.sync_with_layout(self.layout_manager.calculate_layout())
        self.events.emit(EngineEvent.PRESET_CHANGED, {"preset": applied, "requested": name})
        return applied

    async def handle_key(self, key: str, modifiers: Modifiers = None) -> bool:
        return await self.keyboard.handle_key_press(key, modifiers)

    # =========================================================================
    # Recovery wiring
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._recovery_tasks.add(task)
        task.add_done_callback(self._recovery_tasks.discard)

    def _on_retry(self, payload: dict[str, Any]) -> None:
        pane_id = payload["record"].context.get("pane_id")
        if pane_id in self.pane_manager.panes:
            logger.info(f"Retrying pane {pane_id} (attempt {payload.get('attempt')})")
            self._spawn(self.pane_manager.refresh_pane(pane_id))

    def _on_reset(self, payload: dict[str, Any]) -> None:
        pane_id = payload["record"].context.get("pane_id")
        if pane_id in self.pane_manager.panes:
            logger.info(f"Resetting pane {pane_id}")
            self._spawn(self.pane_manager.reset_pane(pane_id))

    def _on_escalated(self, payload: dict[str, Any]) -> None:
        record = payload["record"]
        logger.critical(f"Escalated error in {record.operation_id}: {record.error.message}")

    # =========================================================================
    # Status
    # =========================================================================

    def get_system_status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "project_root": str(self.project_root) if self.project_root else None,
            "layout": self.layout_manager.get_layout_info(),
            "panes": self.pane_manager.get_all_pane_states(),
            "pane_metrics": self.pane_manager.get_metrics(),
            "keyboard": self.keyboard.get_metrics(),
            "watcher": self.change_watcher.get_health(),
            "watcher_error": str(self.watcher_error) if self.watcher_error else None,
            "performance": self.performance_monitor.get_health_status(),
            "errors": self.error_handler.get_error_statistics(),
        }
