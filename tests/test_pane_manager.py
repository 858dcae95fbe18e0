"""
Tests for termdeck Pane Manager
"""

import asyncio

import pytest

from termdeck.config import ErrorHandlingConfig, UpdateConfig
from termdeck.error_handler import ErrorHandler
from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import PaneRegistrationError
from termdeck.layout_manager import compute_geometry
from termdeck.pane_manager import (
    PaneManager,
    PaneState,
    create_batches,
    load_data,
)
from termdeck.presets import BUILTIN_PRESETS


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def error_handler(events):
    return ErrorHandler(ErrorHandlingConfig(enable_recovery=False), events)


@pytest.fixture
def manager(events, error_handler):
    return PaneManager(UpdateConfig(debounce_ms=10, max_concurrent_updates=2), events, error_handler)


def state_log(manager):
    changes = []
    manager.subscribe(lambda change: changes.append((change.pane_id, change.new_state)))
    return changes


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """Tests for register_pane / unregister_pane"""

    def test_register_without_loop_defers_initialization(self, manager):
        pane = manager.register_pane("progress")
        assert pane.state is PaneState.INITIALIZING
        assert pane.config.title == "Progress"

    def test_register_twice(self, manager):
        manager.register_pane("tasks")
        with pytest.raises(PaneRegistrationError, match="already registered"):
            manager.register_pane("tasks")

    def test_register_unknown_pane(self, manager):
        with pytest.raises(PaneRegistrationError, match="Unknown pane"):
            manager.register_pane("weather")

    def test_config_overrides(self, manager):
        pane = manager.register_pane("logs", collapsible=False)
        assert pane.config.collapsible is False
        assert pane.config.refreshable is False

    def test_registration_events(self, manager, events):
        received = []
        events.on(EngineEvent.PANE_REGISTERED, received.append)
        events.on(EngineEvent.PANE_UNREGISTERED, received.append)

        manager.register_pane("tools")
        assert manager.unregister_pane("tools") is True
        assert manager.unregister_pane("tools") is False
        assert received == [{"pane_id": "tools"}, {"pane_id": "tools"}]

    @pytest.mark.asyncio
    async def test_initialization_without_provider(self, manager):
        changes = state_log(manager)
        manager.register_pane("progress")
        await manager.wait_until_initialized()

        pane = manager.panes["progress"]
        assert pane.state is PaneState.READY
        assert pane.data == {"initialized": True}
        assert changes == [("progress", PaneState.LOADING), ("progress", PaneState.READY)]

    @pytest.mark.asyncio
    async def test_initialization_with_async_provider(self, manager):
        async def provider():
            await asyncio.sleep(0)
            return {"phase": "design"}

        manager.register_pane("progress", provider=provider)
        await manager.wait_until_initialized()
        assert manager.panes["progress"].data == {"phase": "design"}

    @pytest.mark.asyncio
    async def test_default_providers(self, events):
        manager = PaneManager(events=events, providers={"tasks": lambda: ["t1", "t2"]})
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        assert manager.panes["tasks"].data == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_failed_initialization(self, manager, error_handler):
        def provider():
            raise FileNotFoundError("no such file: tasks.json")

        manager.register_pane("tasks", provider=provider)
        await manager.wait_until_initialized()

        pane = manager.panes["tasks"]
        assert pane.state is PaneState.ERROR
        assert "tasks.json" in pane.error
        assert error_handler.history[-1].context["type"] == "pane_initialization"
        assert manager.metrics.error_count == 1


class TestSyncWithLayout:
    @pytest.mark.asyncio
    async def test_registers_layout_panes(self, manager):
        geometry = compute_geometry(BUILTIN_PRESETS["development"], 130, 40)
        manager.sync_with_layout(geometry)
        await manager.wait_until_initialized()

        assert list(manager.panes) == ["progress", "tasks", "capabilities"]
        assert manager.focused_pane == "progress"
        assert manager.panes["progress"].state is PaneState.FOCUSED

    @pytest.mark.asyncio
    async def test_drops_panes_leaving_layout(self, manager):
        manager.sync_with_layout(compute_geometry(BUILTIN_PRESETS["debug"], 200, 50))
        await manager.wait_until_initialized()
        manager.queue_update("logs", {"line": 1})

        manager.sync_with_layout(compute_geometry(BUILTIN_PRESETS["quick"], 80, 20))
        assert list(manager.panes) == ["progress"]
        assert manager.pending_updates == 0

    @pytest.mark.asyncio
    async def test_focus_follows_geometry(self, manager):
        geometry = compute_geometry(BUILTIN_PRESETS["development"], 130, 40)
        manager.sync_with_layout(geometry)
        await manager.wait_until_initialized()

        manager.sync_with_layout(geometry.with_focus("tasks"))
        assert manager.focused_pane == "tasks"
        assert manager.panes["progress"].state is PaneState.READY


# =============================================================================
# Updates
# =============================================================================


class TestUpdates:
    """Tests for update_pane and the update queue"""

    @pytest.mark.asyncio
    async def test_update_pane(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        changes = state_log(manager)

        assert await manager.update_pane("tasks", {"count": 3}) is True
        pane = manager.panes["tasks"]
        assert pane.data == {"count": 3}
        assert pane.update_count == 2
        assert changes == [("tasks", PaneState.UPDATING), ("tasks", PaneState.READY)]

    @pytest.mark.asyncio
    async def test_background_update_skips_updating_state(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        changes = state_log(manager)

        await manager.update_pane("tasks", {"count": 1}, background=True)
        assert changes == [("tasks", PaneState.READY)]

    @pytest.mark.asyncio
    async def test_update_unknown_pane(self, manager, caplog):
        assert await manager.update_pane("tools", {}) is False
        assert "non-existent pane" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_update_keeps_last_good_data(self, manager, events, error_handler):
        failures = []
        events.on(EngineEvent.PANE_UPDATE_FAILED, failures.append)
        manager.register_pane("tasks", provider=lambda: {"count": 1})
        await manager.wait_until_initialized()

        def broken():
            raise ValueError("parse error")

        assert await manager.update_pane("tasks", broken, source="file_watcher") is False
        pane = manager.panes["tasks"]
        assert pane.state is PaneState.ERROR
        assert pane.data == {"count": 1}
        assert failures == [{"pane_id": "tasks", "error": "parse error"}]

        context = error_handler.history[-1].context
        assert context["snapshot"] == {"count": 1}
        assert context["source"] == "file_watcher"

    @pytest.mark.asyncio
    async def test_successful_update_clears_error(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        manager.panes["tasks"].set_state(PaneState.ERROR, error="stale")

        await manager.update_pane("tasks", {"ok": True})
        assert manager.panes["tasks"].error is None
        assert manager.panes["tasks"].state is PaneState.READY

    @pytest.mark.asyncio
    async def test_update_keeps_focus_state(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        manager.set_focus("tasks", True)

        await manager.update_pane("tasks", {})
        assert manager.panes["tasks"].state is PaneState.FOCUSED

    @pytest.mark.asyncio
    async def test_update_records_latency(self, events):
        from termdeck.performance_monitor import MetricCategory, PerformanceMonitor

        monitor = PerformanceMonitor(events=events)
        manager = PaneManager(events=events, performance_monitor=monitor)
        manager.register_pane("tasks")
        await manager.wait_until_initialized()

        await manager.update_pane("tasks", {}, source="test")
        sample = monitor.metrics[MetricCategory.UPDATE][-1]
        assert sample.metadata == {"pane_id": "tasks", "source": "test"}
        assert manager.get_metrics()["total_updates"] == 1

    @pytest.mark.asyncio
    async def test_discards_result_when_pane_leaves(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return {"late": True}

        task = asyncio.create_task(manager.update_pane("tasks", slow))
        await asyncio.sleep(0)
        assert manager.active_updates == {"tasks"}
        manager.unregister_pane("tasks")
        gate.set()

        assert await task is False
        assert manager.active_updates == set()

    @pytest.mark.asyncio
    async def test_queue_coalesces_per_pane(self, manager):
        for pane_id in ("progress", "tasks"):
            manager.register_pane(pane_id)
        await manager.wait_until_initialized()

        manager.queue_update("tasks", {"v": 1})
        manager.queue_update("tasks", {"v": 2})
        manager.queue_update("progress", {"v": 3})
        assert manager.pending_updates == 3

        assert await manager.flush() == 2
        assert manager.panes["tasks"].data == {"v": 2}
        assert manager.panes["progress"].data == {"v": 3}
        assert manager.pending_updates == 0

    @pytest.mark.asyncio
    async def test_queue_debounces(self, manager):
        manager.register_pane("tasks")
        await manager.wait_until_initialized()

        manager.queue_update("tasks", {"v": 1})
        assert manager.panes["tasks"].data == {"initialized": True}
        await asyncio.sleep(0.05)
        assert manager.panes["tasks"].data == {"v": 1}

    @pytest.mark.asyncio
    async def test_batches_respect_concurrency_limit(self, manager):
        for pane_id in ("progress", "tasks", "capabilities", "logs", "tools"):
            manager.register_pane(pane_id)
        await manager.wait_until_initialized()

        running = 0
        peak = 0

        def tracked(value):
            async def provider():
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return value
            return provider

        for pane_id in manager.panes:
            manager.queue_update(pane_id, tracked(pane_id))
        assert await manager.flush() == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_cancel_pending_updates(self, manager):
        manager.register_pane("tasks")
        manager.register_pane("tools")
        manager.queue_update("tasks", {})
        manager.queue_update("tools", {})

        assert manager.cancel_pending_updates("tasks") == 1
        assert manager.cancel_pending_updates() == 1
        assert await manager.flush() == 0
        await manager.shutdown()


class TestRefreshAndReset:
    @pytest.mark.asyncio
    async def test_refresh_uses_provider(self, manager):
        counter = iter(range(10))
        manager.register_pane("progress", provider=lambda: next(counter))
        await manager.wait_until_initialized()

        assert await manager.refresh_pane("progress") is True
        assert manager.panes["progress"].data == 1

    @pytest.mark.asyncio
    async def test_refresh_without_provider(self, manager):
        manager.register_pane("tools")
        await manager.wait_until_initialized()
        await manager.refresh_pane("tools")
        assert manager.panes["tools"].data["refreshed"] is True

    @pytest.mark.asyncio
    async def test_refresh_all_skips_non_refreshable(self, manager):
        for pane_id in ("progress", "logs"):
            manager.register_pane(pane_id)
        await manager.wait_until_initialized()
        assert await manager.refresh_all_panes() == 1

    @pytest.mark.asyncio
    async def test_refresh_unknown(self, manager):
        assert await manager.refresh_pane("progress") is False
        assert await manager.reset_pane("progress") is False

    @pytest.mark.asyncio
    async def test_reset_pane(self, manager):
        manager.register_pane("tasks", provider=lambda: {"fresh": True})
        await manager.wait_until_initialized()
        pane = manager.panes["tasks"]
        pane.toggle_collapse()
        pane.set_state(PaneState.ERROR, error="boom")
        changes = state_log(manager)

        assert await manager.reset_pane("tasks") is True
        assert pane.error is None
        assert pane.collapsed is False
        assert pane.data == {"fresh": True}
        assert changes == [
            ("tasks", PaneState.INITIALIZING),
            ("tasks", PaneState.LOADING),
            ("tasks", PaneState.READY),
        ]


# =============================================================================
# Focus, collapse and observation
# =============================================================================


class TestFocusAndCollapse:
    def test_focus_state(self, manager):
        manager.register_pane("tasks")
        assert manager.set_focus("tasks", True)
        assert manager.panes["tasks"].state is PaneState.FOCUSED
        manager.set_focus("tasks", False)
        assert manager.panes["tasks"].state is PaneState.READY

    def test_focus_does_not_hide_error(self, manager):
        pane = manager.register_pane("tasks")
        pane.set_state(PaneState.ERROR, error="boom")
        manager.set_focus("tasks", True)
        assert pane.state is PaneState.ERROR
        assert pane.focused

    def test_focus_unknown(self, manager):
        assert manager.set_focus("tasks", True) is False

    def test_toggle_collapse(self, manager, events):
        toggled = []
        events.on(EngineEvent.PANE_COLLAPSE_TOGGLED, toggled.append)
        manager.register_pane("progress")

        assert manager.toggle_collapse("progress")
        assert manager.panes["progress"].state is PaneState.COLLAPSED
        manager.toggle_collapse("progress")
        assert manager.panes["progress"].state is PaneState.READY
        assert toggled == [
            {"pane_id": "progress", "collapsed": True},
            {"pane_id": "progress", "collapsed": False},
        ]

    def test_expand_focused_pane_returns_to_focused(self, manager):
        pane = manager.register_pane("progress")
        manager.set_focus("progress", True)
        manager.toggle_collapse("progress")
        assert pane.state is PaneState.COLLAPSED

        manager.toggle_collapse("progress")
        assert pane.state is PaneState.FOCUSED
        assert pane.focused and not pane.collapsed

    def test_focus_keeps_collapsed_pane_collapsed(self, manager):
        pane = manager.register_pane("progress")
        manager.toggle_collapse("progress")

        manager.set_focus("progress", True)
        assert pane.state is PaneState.COLLAPSED
        assert pane.focused

        manager.set_focus("progress", False)
        assert pane.state is PaneState.COLLAPSED
        assert pane.collapsed and not pane.focused

    def test_unfocus_collapsed_after_focus(self, manager):
        pane = manager.register_pane("progress")
        manager.set_focus("progress", True)
        manager.toggle_collapse("progress")
        manager.set_focus("progress", False)

        manager.toggle_collapse("progress")
        assert pane.state is PaneState.READY

    def test_collapse_toggle_keeps_error(self, manager):
        pane = manager.register_pane("tasks")
        pane.set_state(PaneState.ERROR, error="boom")

        manager.toggle_collapse("tasks")
        assert pane.collapsed
        assert pane.state is PaneState.ERROR

        manager.toggle_collapse("tasks")
        assert pane.state is PaneState.ERROR
        assert manager.get_pane_state("tasks")["has_error"] is True

    def test_unfocus_errored_pane_keeps_error(self, manager):
        pane = manager.register_pane("tasks")
        manager.set_focus("tasks", True)
        pane.set_state(PaneState.ERROR, error="boom")

        manager.set_focus("tasks", False)
        assert pane.state is PaneState.ERROR

    def test_toggle_collapse_not_collapsible(self, manager):
        manager.register_pane("progress", collapsible=False)
        assert manager.toggle_collapse("progress") is False
        assert manager.toggle_collapse("tools") is False


class TestObservation:
    def test_subscriber_errors_are_contained(self, manager, caplog):
        manager.subscribe(lambda change: 1 / 0)
        seen = state_log(manager)
        manager.register_pane("tasks").set_state(PaneState.LOADING)
        assert seen == [("tasks", PaneState.LOADING)]
        assert "division by zero" in caplog.text

    def test_pane_subscription(self, manager):
        pane = manager.register_pane("tasks")
        seen = []
        unsubscribe = pane.subscribe(lambda change: seen.append(change.to_dict()["new_state"]))
        pane.set_state(PaneState.LOADING)
        unsubscribe()
        pane.set_state(PaneState.READY)
        assert seen == ["loading"]

    def test_state_events(self, manager, events):
        received = []
        events.on(EngineEvent.PANE_STATE_CHANGED, received.append)
        manager.register_pane("tasks").set_state(PaneState.LOADING)
        assert received[0]["change"].old_state is PaneState.INITIALIZING

    def test_states(self, manager):
        manager.register_pane("tasks")
        assert manager.get_pane_state("tasks")["state"] == "initializing"
        assert manager.get_pane_state("tools") is None
        assert set(manager.get_all_pane_states()) == {"tasks"}

    @pytest.mark.asyncio
    async def test_metrics(self, manager):
        manager.register_pane("tasks")
        manager.queue_update("tasks", {})
        metrics = manager.get_metrics()
        assert metrics["registered_panes"] == 1
        assert metrics["queued_updates"] == 1
        manager.reset_metrics()
        assert manager.get_metrics()["total_updates"] == 0
        await manager.shutdown()


class TestHelpers:
    def test_create_batches(self):
        assert create_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert create_batches([], 3) == []
        assert create_batches([1, 2], 0) == [[1], [2]]

    @pytest.mark.asyncio
    async def test_load_data(self):
        async def provider():
            return 2

        assert await load_data(1) == 1
        assert await load_data(lambda: 3) == 3
        assert await load_data(provider) == 2
