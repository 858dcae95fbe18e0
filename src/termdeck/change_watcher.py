"""
Change Watcher

Watches project state files with watchdog and turns bursts of filesystem
notifications into debounced, priority-ordered pane refreshes.

Each watch-table entry maps a relative path (a file, or a directory when it
ends with ``/``) to the panes it feeds; ``all`` targets every pane registered
at the time the batch runs. Observer threads hand notifications to the event
loop with ``call_soon_threadsafe``; all queue handling happens on the loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import psutil
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from termdeck.config import UpdateConfig, WatcherConfig
from termdeck.debounce import DebounceTimer
from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import WatcherInitializationError
from termdeck.pane_manager import create_batches
from termdeck.performance_monitor import sample_process_memory

if TYPE_CHECKING:
    from termdeck.error_handler import ErrorHandler
    from termdeck.pane_manager import PaneManager
    from termdeck.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


# =============================================================================
# Watch configuration
# =============================================================================

ALL_PANES = "all"

WATCH_TABLE: dict[str, list[str]] = {
    # Progress
    ".guidant/workflow/current-phase.json": ["progress"],
    ".guidant/workflow/phases/": ["progress"],
    ".guidant/project/config.json": ["progress", ALL_PANES],
    # Tasks
    ".guidant/ai/task-tickets/": ["tasks"],
    ".guidant/context/current-task.json": ["tasks"],
    # Capabilities
    ".guidant/ai/capabilities.json": ["capabilities"],
    ".guidant/ai/agents/": ["capabilities"],
    # Logs
    ".guidant/context/sessions.json": ["logs"],
    ".guidant/context/decisions.json": ["logs"],
    # Everything
    ".guidant/project/": [ALL_PANES],
}

# File name substrings, checked high to low; unmatched files are low
PRIORITY_PATTERNS: dict[str, list[str]] = {
    "high": ["current-phase.json", "current-task.json"],
    "medium": ["capabilities.json", "sessions.json"],
    "low": ["decisions.json", "config.json"],
}

REQUIRED_DIRS: list[str] = [
    ".guidant",
    ".guidant/workflow",
    ".guidant/ai",
    ".guidant/context",
    ".guidant/project",
]

# Directory entries see changes at most this many levels below them
MAX_DIRECTORY_DEPTH = 2


class ChangeKind(Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"
    ADD_DIR = "add_dir"
    REMOVE_DIR = "remove_dir"


class UpdatePriority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = (UpdatePriority.HIGH, UpdatePriority.MEDIUM, UpdatePriority.LOW)


@dataclass
class ChangeEvent:
    """One filesystem notification routed to panes"""
    source_path: Path
    change_kind: ChangeKind
    target_panes: tuple[str, ...]
    priority: UpdatePriority
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.change_kind.value,
            "file": self.source_path.name,
            "priority": self.priority.value,
        }


@dataclass
class WatchEntry:
    """State of one watch-table entry"""
    relative_path: str
    target_panes: tuple[str, ...]
    full_path: Path
    active: bool = False
    error_count: int = 0
    manual_refresh_only: bool = False
    watch: Any = None
    handler: Any = None

    @property
    def is_directory(self) -> bool:
        return self.relative_path.endswith("/")


@dataclass
class WatcherHealth:
    watchers_active: int = 0
    total_updates: int = 0
    failed_updates: int = 0
    total_file_changes: int = 0
    batches_processed: int = 0
    average_batch_latency_ms: float = 0.0
    last_batch_size: int = 0
    memory_usage: int = 0
    last_health_check: float = field(default_factory=time.time)


def get_update_priority(path: str | Path, patterns: dict[str, list[str]] | None = None) -> UpdatePriority:
    """Classify a changed file by name substring; unmatched files are low."""
    patterns = patterns or PRIORITY_PATTERNS
    name = Path(path).name
    for tier in PRIORITY_ORDER:
        if any(pattern in name for pattern in patterns.get(tier.value, [])):
            return tier
    return UpdatePriority.LOW


def nearest_existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.is_dir():
            return candidate
    return Path(path.anchor or ".")


# =============================================================================
# watchdog handler
# =============================================================================


class _ChangeEventHandler(FileSystemEventHandler):
    """
    Filters watchdog events down to one watch-table entry.

    Runs on the observer thread; ``dispatch_change`` must be thread-safe.
    """

    def __init__(self, entry: WatchEntry, dispatch: Callable[[ChangeKind, Path], None]):
        self.target = entry.full_path
        self.is_directory = entry.is_directory
        self.dispatch_change = dispatch

    def _matches(self, path: Path) -> bool:
        if not self.is_directory:
            return path == self.target
        if path == self.target:
            return True
        try:
            relative = path.relative_to(self.target)
        except ValueError:
            return False
        return len(relative.parts) <= MAX_DIRECTORY_DEPTH + 1

    def _emit(self, kind: ChangeKind, raw_path: str | bytes) -> None:
        path = Path(os.fsdecode(raw_path))
        if self._matches(path):
            self.dispatch_change(kind, path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.ADD_DIR if event.is_directory else ChangeKind.ADD, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime changes duplicate the file events inside them
        if event.is_directory:
            return
        self._emit(ChangeKind.MODIFY, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.REMOVE_DIR if event.is_directory else ChangeKind.REMOVE, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.REMOVE_DIR if event.is_directory else ChangeKind.REMOVE, event.src_path)
        self._emit(ChangeKind.ADD_DIR if event.is_directory else ChangeKind.ADD, event.dest_path)


# =============================================================================
# Change Watcher
# =============================================================================


class ChangeWatcher:
    """
    Coordinates filesystem watches and batched pane updates.

    Failed watches are restarted up to ``retry_attempts`` times, then the
    entry is marked inactive and its panes only update on manual refresh.
    """

    def __init__(
        self,
        pane_manager: PaneManager,
        config: WatcherConfig | None = None,
        update_config: UpdateConfig | None = None,
        events: EventEmitter | None = None,
        error_handler: ErrorHandler | None = None,
        performance_monitor: PerformanceMonitor | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.pane_manager = pane_manager
        self.config = config or WatcherConfig()
        self.update_config = update_config or UpdateConfig()
        self.events = events or EventEmitter()
        self.error_handler = error_handler
        self.performance_monitor = performance_monitor
        self.observer_factory = observer_factory

        self.watch_table = self.config.watch_table or WATCH_TABLE
        self.priority_patterns = self.config.priority_patterns or PRIORITY_PATTERNS
        self.required_dirs = self.config.required_dirs or REQUIRED_DIRS

        self.project_root = Path.cwd()
        self.watchers: dict[str, WatchEntry] = {}
        self.health = WatcherHealth()
        self.errors: deque[dict[str, Any]] = deque(maxlen=self.config.max_error_history)

        self._queue: list[ChangeEvent] = []
        self._timer = DebounceTimer(self.update_config.debounce_ms, self.process_update_queue)
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._restart_tasks: set[asyncio.Task[Any]] = set()
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self, project_root: Path | str | None = None) -> int:
        """
        Verify the project layout and start watching.

        Returns:
            Number of active watches

        Raises:
            WatcherInitializationError: If a required directory is missing
        """
        if project_root is not None:
            self.project_root = Path(project_root).expanduser().resolve()

        missing = [d for d in self.required_dirs if not (self.project_root / d).is_dir()]
        if missing:
            error = WatcherInitializationError(
                f"Required directory not found: {', '.join(missing)}", missing=missing
            )
            self._record_error("initialization", str(self.project_root), error)
            self.events.emit(EngineEvent.INITIALIZATION_ERROR, {"error": str(error), "missing": missing})
            raise error

        self._loop = asyncio.get_running_loop()
        self._running = True
        self._ensure_observer()

        for relative_path, panes in self.watch_table.items():
            entry = WatchEntry(
                relative_path=relative_path,
                target_panes=tuple(panes),
                full_path=self.project_root / relative_path.rstrip("/"),
            )
            self.watchers[relative_path] = entry
            try:
                self._schedule(entry)
            except OSError as e:
                self.handle_watcher_error(relative_path, e)

        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Watching {self.active_watchers} paths under {self.project_root}")
        return self.active_watchers

    async def shutdown(self) -> None:
        self._running = False
        self._queue.clear()
        await self._timer.close()

        tasks = [t for t in (self._health_task, *self._restart_tasks) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._health_task = None
        self._restart_tasks.clear()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None

        for entry in self.watchers.values():
            entry.active = False
            entry.watch = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_watchers(self) -> int:
        return sum(1 for entry in self.watchers.values() if entry.active)

    def _ensure_observer(self) -> Any:
        if self._observer is None or not self._observer.is_alive():
            self._observer = self.observer_factory()
            self._observer.start()
        return self._observer

    def _schedule(self, entry: WatchEntry) -> None:
        """Schedule a watch for an entry; raises OSError on failure."""
        observer = self._ensure_observer()
        target = entry.full_path if entry.is_directory else entry.full_path.parent
        watch_dir = nearest_existing_ancestor(target)
        if watch_dir != target:
            logger.debug(f"Watch path doesn't exist yet: {entry.relative_path}, watching {watch_dir}")

        handler = _ChangeEventHandler(
            entry, lambda kind, path, panes=entry.target_panes: self._dispatch_threadsafe(kind, path, panes)
        )
        entry.handler = handler
        entry.watch = observer.schedule(
            handler,
            str(watch_dir),
            recursive=entry.is_directory or watch_dir != target,
        )
        entry.active = True

    def _unschedule(self, entry: WatchEntry) -> None:
        # Entries sharing a directory share one watch, so only this handler goes
        if entry.watch is not None and self._observer is not None:
            try:
                self._observer.remove_handler_for_watch(entry.handler, entry.watch)
            except KeyError:
                logger.debug(f"Watch for {entry.relative_path} was already removed")
        entry.watch = None

    def _dispatch_threadsafe(self, kind: ChangeKind, path: Path, panes: tuple[str, ...]) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.handle_file_change, kind, path, panes)

    # =========================================================================
    # Change handling
    # =========================================================================

    def handle_file_change(
        self,
        kind: ChangeKind | str,
        path: Path | str,
        target_panes: list[str] | tuple[str, ...],
    ) -> ChangeEvent:
        """Queue a change and re-arm the debounce timer. Loop thread only."""
        event = ChangeEvent(
            source_path=Path(path),
            change_kind=ChangeKind(kind),
            target_panes=tuple(target_panes),
            priority=get_update_priority(path, self.priority_patterns),
        )
        self.health.total_file_changes += 1
        self._queue.append(event)
        self._timer.trigger()
        return event

    @property
    def pending_changes(self) -> int:
        return len(self._queue)

    def group_updates(self, changes: list[ChangeEvent]) -> dict[UpdatePriority, dict[str, list[ChangeEvent]]]:
        """
        Group changes by tier, then by pane.

        ``all`` expands to the panes registered right now. Panes that are not
        registered are dropped.
        """
        grouped: dict[UpdatePriority, dict[str, list[ChangeEvent]]] = {tier: {} for tier in PRIORITY_ORDER}
        registered = list(self.pane_manager.panes)

        for change in changes:
            tier = grouped[change.priority]
            for pane_id in change.target_panes:
                targets = registered if pane_id == ALL_PANES else [pane_id]
                for target in targets:
                    if target not in self.pane_manager.panes:
                        continue
                    bucket = tier.setdefault(target, [])
                    if not bucket or bucket[-1] is not change:
                        bucket.append(change)
        return grouped

    async def process_update_queue(self) -> int:
        """
        Apply queued changes: high tier first, then medium, then low.

        Within a tier, panes are updated in batches of at most
        ``max_concurrent_updates``; batches never overlap.

        Returns:
            Number of pane updates applied
        """
        if not self._queue:
            return 0

        started = time.perf_counter()
        snapshot = list(self._queue)
        self._queue.clear()

        applied = 0
        grouped = self.group_updates(snapshot)
        for tier in PRIORITY_ORDER:
            pane_ids = list(grouped[tier])
            for batch in create_batches(pane_ids, self.update_config.max_concurrent_updates):
                results = await asyncio.gather(*(self._update_pane(p, grouped[tier][p]) for p in batch))
                applied += sum(1 for r in results if r)

        latency = (time.perf_counter() - started) * 1000
        self.health.batches_processed += 1
        self.health.average_batch_latency_ms += (
            latency - self.health.average_batch_latency_ms
        ) / self.health.batches_processed
        self.health.last_batch_size = len(snapshot)

        self.events.emit(
            EngineEvent.UPDATE_BATCH_COMPLETE,
            {"updates_processed": len(snapshot), "panes_updated": applied, "latency_ms": latency},
        )
        return applied

    async def _update_pane(self, pane_id: str, changes: list[ChangeEvent]) -> bool:
        pane = self.pane_manager.panes.get(pane_id)
        if pane is None:
            return False

        if pane.provider is not None:
            data: Any = pane.provider
        else:
            data = {
                "pane_id": pane_id,
                "updates": len(changes),
                "last_update": time.time(),
                "changes": [c.to_dict() for c in changes],
            }

        ok = await self.pane_manager.update_pane(pane_id, data, background=True, source="file_watcher")
        if ok:
            self.health.total_updates += 1
        else:
            self.health.failed_updates += 1
        return ok

    async def flush(self) -> int:
        """
        Process queued changes now instead of waiting for the debounce window.

        Returns:
            Number of queued changes that were processed
        """
        pending = len(self._queue)
        await self._timer.flush()
        return pending

    # =========================================================================
    # Failure handling
    # =========================================================================

    def handle_watcher_error(self, relative_path: str, error: BaseException) -> None:
        """Deactivate a failed watch and schedule a restart, or give up."""
        entry = self.watchers.get(relative_path)
        self._record_error("watcher_error", relative_path, error)
        if entry is None:
            return

        entry.error_count += 1
        entry.active = False
        self._unschedule(entry)

        if entry.error_count <= self.config.retry_attempts and self._running:
            logger.warning(
                f"Watcher for {relative_path} failed ({error}), "
                f"retry {entry.error_count}/{self.config.retry_attempts}"
            )
            task = asyncio.get_running_loop().create_task(self._restart_later(relative_path))
            self._restart_tasks.add(task)
            task.add_done_callback(self._restart_tasks.discard)
            return

        entry.manual_refresh_only = True
        logger.error(f"Watcher for {relative_path} failed permanently: {error}")
        if self.error_handler is not None:
            self.error_handler.record(error, {"type": "file_watcher", "operation_id": relative_path})
        self.events.emit(
            EngineEvent.WATCHER_FAILED,
            {"path": relative_path, "panes": list(entry.target_panes), "error": str(error)},
        )

    async def _restart_later(self, relative_path: str) -> None:
        await asyncio.sleep(self.config.retry_delay_ms / 1000)
        await self.restart_watcher(relative_path)

    async def restart_watcher(self, relative_path: str) -> bool:
        entry = self.watchers.get(relative_path)
        if entry is None:
            return False

        self._unschedule(entry)
        try:
            self._schedule(entry)
        except OSError as e:
            self.handle_watcher_error(relative_path, e)
            return False

        entry.manual_refresh_only = False
        self.events.emit(EngineEvent.WATCHER_RESTARTED, {"path": relative_path, "attempt": entry.error_count})
        logger.info(f"Watcher for {relative_path} restarted")
        return True

    def get_manual_refresh_panes(self) -> set[str]:
        """Panes fed by at least one permanently failed watch."""
        panes: set[str] = set()
        for entry in self.watchers.values():
            if entry.manual_refresh_only:
                panes.update(entry.target_panes)
        return panes

    def _record_error(self, error_type: str, path: str, error: BaseException) -> None:
        self.errors.append({"type": error_type, "path": path, "error": str(error), "timestamp": time.time()})

    # =========================================================================
    # Health
    # =========================================================================

    async def _health_loop(self) -> None:
        interval = self.config.health_check_interval_ms / 1000
        while self._running:
            try:
                await asyncio.sleep(interval)
                self.perform_health_check()
            except asyncio.CancelledError:
                break

    def perform_health_check(self) -> dict[str, Any]:
        if self._running and self._observer is not None and not self._observer.is_alive():
            self._observer = None
            for relative_path, entry in self.watchers.items():
                if entry.active:
                    entry.watch = None
                    self.handle_watcher_error(relative_path, RuntimeError("Filesystem observer stopped"))

        self.health.watchers_active = self.active_watchers
        self.health.last_health_check = time.time()
        try:
            self.health.memory_usage = sample_process_memory()
        except psutil.Error as e:
            logger.debug(f"Memory sampling failed: {e}")
        else:
            if self.performance_monitor is not None:
                self.performance_monitor.record_memory_usage(self.health.memory_usage)

        health = self.get_health()
        self.events.emit(EngineEvent.HEALTH_CHECK, {"source": "watcher", "health": health})
        return health

    def get_health(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "project_root": str(self.project_root),
            "watchers_total": len(self.watchers),
            "watchers_active": self.active_watchers,
            "total_updates": self.health.total_updates,
            "failed_updates": self.health.failed_updates,
            "total_file_changes": self.health.total_file_changes,
            "batches_processed": self.health.batches_processed,
            "average_batch_latency_ms": self.health.average_batch_latency_ms,
            "last_batch_size": self.health.last_batch_size,
            "memory_usage": self.health.memory_usage,
            "last_health_check": self.health.last_health_check,
            "manual_refresh_panes": sorted(self.get_manual_refresh_panes()),
            "recent_errors": list(self.errors)[-5:],
        }
