"""
Tests for termdeck Change Watcher

Most tests drive the watcher through a fake observer so no real filesystem
notifications are involved; TestRealObserver checks the watchdog wiring end
to end.
"""

import asyncio
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from termdeck.change_watcher import (
    REQUIRED_DIRS,
    WATCH_TABLE,
    ChangeKind,
    ChangeWatcher,
    UpdatePriority,
    WatchEntry,
    _ChangeEventHandler,
    get_update_priority,
    nearest_existing_ancestor,
)
from termdeck.config import ErrorHandlingConfig, UpdateConfig, WatcherConfig
from termdeck.error_handler import ErrorHandler
from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import WatcherInitializationError
from termdeck.pane_manager import PaneManager
from termdeck.performance_monitor import MetricCategory, PerformanceMonitor


class FakeObserver:
    """Stands in for watchdog's Observer and records scheduled watches"""

    def __init__(self, fail_names=(), failures=1_000):
        self.fail_names = set(fail_names)
        self.failures_left = failures
        self.scheduled = []
        self.unscheduled = []
        self.alive = False
        self.joined = False

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        self.joined = True

    def is_alive(self):
        return self.alive

    def schedule(self, handler, path, recursive=False):
        if handler.target.name in self.fail_names and self.failures_left > 0:
            self.failures_left -= 1
            raise OSError(f"inotify watch limit reached for {path}")
        watch = (handler, path, recursive)
        self.scheduled.append(watch)
        return watch

    def remove_handler_for_watch(self, handler, watch):
        if watch not in self.scheduled:
            raise KeyError(watch)
        self.scheduled.remove(watch)
        self.unscheduled.append(watch)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def project(tmp_path):
    for directory in REQUIRED_DIRS:
        (tmp_path / directory).mkdir(parents=True, exist_ok=True)
    return tmp_path.resolve()


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def panes(events):
    return PaneManager(UpdateConfig(debounce_ms=10), events)


@pytest.fixture
def observer():
    return FakeObserver()


@pytest.fixture
def make_watcher(panes, events, observer):
    def _make(observer=observer, **config):
        config.setdefault("retry_delay_ms", 0)
        return ChangeWatcher(
            panes,
            WatcherConfig(**config),
            UpdateConfig(debounce_ms=10, max_concurrent_updates=2),
            events,
            ErrorHandler(ErrorHandlingConfig(enable_recovery=False), events),
            PerformanceMonitor(events=events),
            observer_factory=lambda: observer,
        )
    return _make


async def register(panes, *pane_ids, **providers):
    for pane_id in pane_ids:
        panes.register_pane(pane_id, provider=providers.get(pane_id))
    await panes.wait_until_initialized()


# =============================================================================
# Helpers
# =============================================================================


class TestPriority:
    @pytest.mark.parametrize(
        "path,priority",
        [
            (".guidant/workflow/current-phase.json", UpdatePriority.HIGH),
            (".guidant/context/current-task.json", UpdatePriority.HIGH),
            (".guidant/ai/capabilities.json", UpdatePriority.MEDIUM),
            (".guidant/context/sessions.json", UpdatePriority.MEDIUM),
            (".guidant/context/decisions.json", UpdatePriority.LOW),
            (".guidant/project/config.json", UpdatePriority.LOW),
            (".guidant/ai/task-tickets/T-12.json", UpdatePriority.LOW),
        ],
    )
    def test_builtin_patterns(self, path, priority):
        assert get_update_priority(path) is priority

    def test_custom_patterns(self):
        assert get_update_priority("x/notes.md", {"high": ["notes"]}) is UpdatePriority.HIGH

    def test_nearest_existing_ancestor(self, tmp_path):
        assert nearest_existing_ancestor(tmp_path / "a" / "b") == tmp_path
        assert nearest_existing_ancestor(tmp_path) == tmp_path


class TestEventHandler:
    """Tests for the watchdog event filter"""

    def make(self, tmp_path, relative):
        entry = WatchEntry(relative, ("tasks",), tmp_path / relative.rstrip("/"))
        received = []
        handler = _ChangeEventHandler(entry, lambda kind, path: received.append((kind, path.name)))
        return handler, received

    def test_file_entry_matches_exact_path(self, tmp_path):
        handler, received = self.make(tmp_path, "ctx/current-task.json")
        handler.dispatch(FileModifiedEvent(str(tmp_path / "ctx" / "current-task.json")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / "ctx" / "sessions.json")))
        assert received == [(ChangeKind.MODIFY, "current-task.json")]

    def test_directory_entry_depth(self, tmp_path):
        handler, received = self.make(tmp_path, "tickets/")
        handler.dispatch(FileCreatedEvent(str(tmp_path / "tickets" / "a.json")))
        handler.dispatch(FileCreatedEvent(str(tmp_path / "tickets" / "x" / "y" / "b.json")))
        handler.dispatch(FileCreatedEvent(str(tmp_path / "tickets" / "x" / "y" / "z" / "c.json")))
        handler.dispatch(FileCreatedEvent(str(tmp_path / "elsewhere.json")))
        assert received == [(ChangeKind.ADD, "a.json"), (ChangeKind.ADD, "b.json")]

    def test_directory_events(self, tmp_path):
        handler, received = self.make(tmp_path, "tickets/")
        handler.dispatch(DirCreatedEvent(str(tmp_path / "tickets" / "sprint")))
        handler.dispatch(DirModifiedEvent(str(tmp_path / "tickets")))
        assert received == [(ChangeKind.ADD_DIR, "sprint")]

    def test_delete_and_move(self, tmp_path):
        handler, received = self.make(tmp_path, "tickets/")
        handler.dispatch(FileDeletedEvent(str(tmp_path / "tickets" / "a.json")))
        handler.dispatch(FileMovedEvent(str(tmp_path / "tickets" / "b.tmp"), str(tmp_path / "tickets" / "b.json")))
        assert received == [
            (ChangeKind.REMOVE, "a.json"),
            (ChangeKind.REMOVE, "b.tmp"),
            (ChangeKind.ADD, "b.json"),
        ]


# =============================================================================
# Lifecycle
# =============================================================================


class TestInitialize:
    @pytest.mark.asyncio
    async def test_missing_directories(self, tmp_path, make_watcher, events):
        (tmp_path / ".guidant").mkdir()
        failures = []
        events.on(EngineEvent.INITIALIZATION_ERROR, failures.append)
        watcher = make_watcher()

        with pytest.raises(WatcherInitializationError) as exc_info:
            await watcher.initialize(tmp_path)

        assert ".guidant/workflow" in exc_info.value.missing
        assert failures[0]["missing"] == exc_info.value.missing
        assert watcher.errors[-1]["type"] == "initialization"
        assert not watcher.is_running

    @pytest.mark.asyncio
    async def test_schedules_every_entry(self, project, make_watcher, observer):
        watcher = make_watcher()
        try:
            assert await watcher.initialize(project) == len(WATCH_TABLE)
            assert watcher.is_running
            watched = {handler.target: (Path(path), recursive) for handler, path, recursive in observer.scheduled}

            # Existing file's directory, watched flat
            assert watched[project / ".guidant/workflow/current-phase.json"] == (project / ".guidant/workflow", False)
            # Missing directory falls back to a recursive watch of its parent
            assert watched[project / ".guidant/ai/task-tickets"] == (project / ".guidant/ai", True)
            # Existing directory, recursive
            assert watched[project / ".guidant/project"] == (project / ".guidant/project", True)
        finally:
            await watcher.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown(self, project, make_watcher, observer):
        watcher = make_watcher()
        await watcher.initialize(project)
        watcher.handle_file_change("modify", project / "x.json", ["tasks"])
        await watcher.shutdown()

        assert not watcher.is_running
        assert observer.joined and not observer.alive
        assert watcher.active_watchers == 0
        assert watcher.pending_changes == 0


# =============================================================================
# Change handling
# =============================================================================


class TestChangeHandling:
    @pytest.mark.asyncio
    async def test_change_updates_pane_with_summary(self, make_watcher, panes, events):
        await register(panes, "tasks")
        batches = []
        events.on(EngineEvent.UPDATE_BATCH_COMPLETE, batches.append)
        watcher = make_watcher()

        event = watcher.handle_file_change("modify", ".guidant/context/current-task.json", ["tasks"])
        assert event.priority is UpdatePriority.HIGH
        assert watcher.pending_changes == 1

        assert await watcher.flush() == 1
        data = panes.panes["tasks"].data
        assert data["pane_id"] == "tasks"
        assert data["updates"] == 1
        assert data["changes"] == [{"type": "modify", "file": "current-task.json", "priority": "high"}]
        assert batches[0]["updates_processed"] == 1
        assert batches[0]["panes_updated"] == 1

    @pytest.mark.asyncio
    async def test_provider_is_preferred(self, make_watcher, panes):
        await register(panes, "progress", progress=lambda: {"phase": 3})
        watcher = make_watcher()
        watcher.handle_file_change("modify", "current-phase.json", ["progress"])
        await watcher.flush()
        assert panes.panes["progress"].data == {"phase": 3}

    @pytest.mark.asyncio
    async def test_burst_is_debounced(self, make_watcher, panes, events):
        await register(panes, "logs")
        batches = []
        events.on(EngineEvent.UPDATE_BATCH_COMPLETE, batches.append)
        watcher = make_watcher()

        for _ in range(5):
            watcher.handle_file_change("modify", "sessions.json", ["logs"])
        await asyncio.sleep(0.1)

        assert len(batches) == 1
        assert batches[0]["updates_processed"] == 5
        assert panes.panes["logs"].data["updates"] == 5
        assert watcher.get_health()["total_file_changes"] == 5

    @pytest.mark.asyncio
    async def test_all_expands_to_registered_panes(self, make_watcher, panes):
        await register(panes, "progress", "tasks")
        watcher = make_watcher()
        watcher.handle_file_change("modify", "config.json", ["progress", "all"])

        grouped = watcher.group_updates(watcher._queue)
        assert set(grouped[UpdatePriority.LOW]) == {"progress", "tasks"}
        assert len(grouped[UpdatePriority.LOW]["progress"]) == 1
        assert await watcher.flush() == 1

    @pytest.mark.asyncio
    async def test_unregistered_panes_are_dropped(self, make_watcher, panes):
        await register(panes, "tasks")
        watcher = make_watcher()
        watcher.handle_file_change("modify", "capabilities.json", ["capabilities"])
        await watcher.flush()
        assert watcher.health.batches_processed == 1
        assert watcher.health.total_updates == 0

    @pytest.mark.asyncio
    async def test_tiers_run_high_to_low(self, make_watcher, panes):
        order = []

        def recorder(pane_id):
            return lambda: order.append(pane_id) or {"pane": pane_id}

        await register(
            panes,
            "tasks",
            "capabilities",
            "logs",
            tasks=recorder("tasks"),
            capabilities=recorder("capabilities"),
            logs=recorder("logs"),
        )
        order.clear()
        watcher = make_watcher()

        watcher.handle_file_change("modify", "decisions.json", ["logs"])
        watcher.handle_file_change("modify", "capabilities.json", ["capabilities"])
        watcher.handle_file_change("modify", "current-task.json", ["tasks"])
        await watcher.flush()

        assert order == ["tasks", "capabilities", "logs"]

    @pytest.mark.asyncio
    async def test_failed_pane_update_counted(self, make_watcher, panes):
        def broken():
            raise ValueError("bad json")

        panes.register_pane("tasks")
        await panes.wait_until_initialized()
        panes.panes["tasks"].provider = broken
        watcher = make_watcher()

        watcher.handle_file_change("modify", "current-task.json", ["tasks"])
        await watcher.flush()
        assert watcher.health.failed_updates == 1


# =============================================================================
# Failure handling and health
# =============================================================================


class TestWatcherFailures:
    @pytest.mark.asyncio
    async def test_restart_after_transient_failure(self, project, make_watcher, events):
        observer = FakeObserver(fail_names={"sessions.json"}, failures=1)
        restarted = []
        events.on(EngineEvent.WATCHER_RESTARTED, restarted.append)
        watcher = make_watcher(observer=observer, retry_attempts=2)

        try:
            assert await watcher.initialize(project) == len(WATCH_TABLE) - 1
            await asyncio.sleep(0.05)
            assert restarted == [{"path": ".guidant/context/sessions.json", "attempt": 1}]
            assert watcher.active_watchers == len(WATCH_TABLE)
        finally:
            await watcher.shutdown()

    @pytest.mark.asyncio
    async def test_permanent_failure_falls_back_to_manual_refresh(self, project, make_watcher, events):
        observer = FakeObserver(fail_names={"sessions.json"})
        failed = []
        events.on(EngineEvent.WATCHER_FAILED, failed.append)
        watcher = make_watcher(observer=observer, retry_attempts=1)

        try:
            await watcher.initialize(project)
            await asyncio.sleep(0.05)

            entry = watcher.watchers[".guidant/context/sessions.json"]
            assert entry.manual_refresh_only
            assert entry.error_count == 2
            assert failed == [
                {
                    "path": ".guidant/context/sessions.json",
                    "panes": ["logs"],
                    "error": f"inotify watch limit reached for {project / '.guidant/context'}",
                }
            ]
            assert watcher.get_manual_refresh_panes() == {"logs"}
            record = watcher.error_handler.history[-1]
            assert record.context == {"type": "file_watcher", "operation_id": ".guidant/context/sessions.json"}
        finally:
            await watcher.shutdown()

    @pytest.mark.asyncio
    async def test_restart_unknown_path(self, make_watcher):
        assert await make_watcher().restart_watcher("nope") is False


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check(self, project, make_watcher, events):
        checks = []
        events.on(EngineEvent.HEALTH_CHECK, checks.append)
        watcher = make_watcher()
        await watcher.initialize(project)
        try:
            health = watcher.perform_health_check()
            assert health["watchers_active"] == len(WATCH_TABLE)
            assert health["memory_usage"] > 0
            assert checks[-1] == {"source": "watcher", "health": health}
            assert len(watcher.performance_monitor.metrics[MetricCategory.MEMORY]) == 1
        finally:
            await watcher.shutdown()

    @pytest.mark.asyncio
    async def test_dead_observer_detected(self, project, make_watcher, observer):
        watcher = make_watcher(retry_attempts=0)
        await watcher.initialize(project)
        try:
            observer.alive = False
            health = watcher.perform_health_check()
            assert health["watchers_active"] == 0
            assert set(health["manual_refresh_panes"]) == {"progress", "tasks", "capabilities", "logs", "all"}
            assert health["recent_errors"][-1]["error"] == "Filesystem observer stopped"
        finally:
            await watcher.shutdown()


class TestRealObserver:
    """End to end through watchdog's platform observer"""

    @pytest.mark.asyncio
    async def test_file_write_reaches_pane(self, project, panes, events):
        await register(panes, "progress")
        watcher = ChangeWatcher(panes, WatcherConfig(), UpdateConfig(debounce_ms=10), events)
        batches = []
        events.on(EngineEvent.UPDATE_BATCH_COMPLETE, batches.append)

        await watcher.initialize(project)
        try:
            (project / ".guidant/workflow/current-phase.json").write_text('{"phase": "design"}')
            for _ in range(100):
                if batches:
                    break
                await asyncio.sleep(0.05)

            data = panes.panes["progress"].data
            assert data["pane_id"] == "progress"
            assert any(c["file"] == "current-phase.json" for c in data["changes"])
        finally:
            await watcher.shutdown()
