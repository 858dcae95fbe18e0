"""
Pane Manager

Owns the lifecycle and state of every pane in the current layout: registration,
initial load through a data provider, debounced and batched updates, focus and
collapse flags, and change notification.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from termdeck.config import UpdateConfig
from termdeck.debounce import DebounceTimer
from termdeck.events import EngineEvent, EventEmitter
from termdeck.exceptions import PaneRegistrationError
from termdeck.presets import PANE_CONFIGS, PaneConfig

if TYPE_CHECKING:
    from termdeck.error_handler import ErrorHandler
    from termdeck.layout_manager import LayoutGeometry
    from termdeck.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)

# A provider returns pane data, either directly or as an awaitable
DataProvider = Callable[[], Union[Any, Awaitable[Any]]]

_UNSET: Any = object()


class PaneState(Enum):
    """Pane lifecycle states"""
    INITIALIZING = "initializing"
    LOADING = "loading"
    READY = "ready"
    UPDATING = "updating"
    ERROR = "error"
    COLLAPSED = "collapsed"
    FOCUSED = "focused"


@dataclass
class PaneStateChange:
    """Notification sent to pane subscribers on every transition"""
    pane_id: str
    old_state: PaneState
    new_state: PaneState
    data: Any
    error: str | None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane_id": self.pane_id,
            "old_state": self.old_state.value,
            "new_state": self.new_state.value,
            "error": self.error,
            "timestamp": self.timestamp,
        }


PaneSubscriber = Callable[[PaneStateChange], None]


@dataclass
class Pane:
    """A registered pane and its current state"""
    id: str
    config: PaneConfig
    provider: DataProvider | None = None
    state: PaneState = PaneState.INITIALIZING
    data: Any = None
    error: str | None = None
    last_update: float | None = None
    collapsed: bool = False
    focused: bool = False
    update_count: int = 0

    _subscribers: list[PaneSubscriber] = field(default_factory=list, repr=False)

    def set_state(self, new_state: PaneState, data: Any = _UNSET, error: str | None = None) -> None:
        """Transition to a new state, optionally applying data or an error."""
        old_state = self.state
        self.state = new_state

        if data is not _UNSET:
            self.data = data
            self.last_update = time.time()
            self.update_count += 1
            self.error = None
        if error is not None:
            self.error = error

        self._notify(PaneStateChange(self.id, old_state, new_state, self.data, self.error))

    def resting_state(self) -> PaneState:
        """State to return to after loading or updating."""
        if self.collapsed:
            return PaneState.COLLAPSED
        if self.focused:
            return PaneState.FOCUSED
        return PaneState.READY

    def subscribe(self, callback: PaneSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback) if callback in self._subscribers else None

    def _notify(self, change: PaneStateChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"Error in pane subscriber for {self.id}: {e}")

    def settled_state(self) -> PaneState:
        """State after a focus or collapse change; an error stays visible."""
        if self.error is not None:
            return PaneState.ERROR
        return self.resting_state()

    def toggle_collapse(self) -> None:
        self.collapsed = not self.collapsed
        self.set_state(self.settled_state())

    def set_focus(self, focused: bool) -> None:
        self.focused = focused
        if focused and self.state not in (PaneState.ERROR, PaneState.COLLAPSED):
            self.set_state(PaneState.FOCUSED)
        elif not focused and self.state is PaneState.FOCUSED:
            self.set_state(self.settled_state())

    def get_status(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "collapsed": self.collapsed,
            "focused": self.focused,
            "has_data": self.data is not None,
            "has_error": self.error is not None,
            "error": self.error,
            "last_update": self.last_update,
            "update_count": self.update_count,
        }


@dataclass
class QueuedUpdate:
    pane_id: str
    data: Any
    background: bool = False
    source: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class PaneMetrics:
    total_updates: int = 0
    average_update_ms: float = 0.0
    error_count: int = 0
    last_reset: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_updates": self.total_updates,
            "average_update_ms": self.average_update_ms,
            "error_count": self.error_count,
            "last_reset": self.last_reset,
        }


async def load_data(source: Any) -> Any:
    """Evaluate a data provider or return plain data unchanged."""
    if callable(source):
        source = source()
    if inspect.isawaitable(source):
        source = await source
    return source


class PaneManager:
    """
    Registry and state machine for panes.

    Updates queued with queue_update() are coalesced per pane (last write
    wins) and applied after a debounce window in batches of at most
    ``max_concurrent_updates`` concurrent updates.
    """

    def __init__(
        self,
        config: UpdateConfig | None = None,
        events: EventEmitter | None = None,
        error_handler: ErrorHandler | None = None,
        performance_monitor: PerformanceMonitor | None = None,
        providers: dict[str, DataProvider] | None = None,
    ):
        self.config = config or UpdateConfig()
        self.events = events or EventEmitter()
        self.error_handler = error_handler
        self.performance_monitor = performance_monitor
        self.providers: dict[str, DataProvider] = dict(providers or {})

        self.panes: dict[str, Pane] = {}
        self.metrics = PaneMetrics()

        self._queue: list[QueuedUpdate] = []
        self._timer = DebounceTimer(self.config.debounce_ms, self.process_update_queue)
        self._active: set[str] = set()
        self._init_tasks: dict[str, asyncio.Task[bool]] = {}
        self._subscribers: list[PaneSubscriber] = []

    # =========================================================================
    # Registration
    # =========================================================================

    def register_pane(self, pane_id: str, provider: DataProvider | None = None, **overrides: Any) -> Pane:
        """
        Register a pane and start loading its initial data.

        Initialization runs as a task when an event loop is running; otherwise
        the pane stays in INITIALIZING until initialize_pane() is awaited.

        Args:
            pane_id: One of the known pane ids
            provider: Optional data provider (defaults to the one configured for the pane)
            **overrides: PaneConfig fields to override

        Raises:
            PaneRegistrationError: If the pane is already registered or unknown
        """
        if pane_id in self.panes:
            raise PaneRegistrationError(f"Pane {pane_id} is already registered")

        base = PANE_CONFIGS.get(pane_id)
        if base is None:
            raise PaneRegistrationError(f"Unknown pane type: {pane_id}")

        pane = Pane(
            id=pane_id,
            config=replace(base, **overrides) if overrides else base,
            provider=provider or self.providers.get(pane_id),
        )
        pane.subscribe(self._on_pane_change)
        self.panes[pane_id] = pane
        self.events.emit(EngineEvent.PANE_REGISTERED, {"pane_id": pane_id})

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, deferring initialization of {pane_id}")
        else:
            task = loop.create_task(self.initialize_pane(pane_id))
            self._init_tasks[pane_id] = task
            task.add_done_callback(lambda t, pid=pane_id: self._forget_init_task(pid, t))

        return pane

    def _forget_init_task(self, pane_id: str, task: asyncio.Task[bool]) -> None:
        if self._init_tasks.get(pane_id) is task:
            del self._init_tasks[pane_id]

    def unregister_pane(self, pane_id: str) -> bool:
        pane = self.panes.pop(pane_id, None)
        if pane is None:
            return False

        self.cancel_pending_updates(pane_id)
        self._active.discard(pane_id)
        task = self._init_tasks.pop(pane_id, None)
        if task is not None:
            task.cancel()

        self.events.emit(EngineEvent.PANE_UNREGISTERED, {"pane_id": pane_id})
        return True

    async def initialize_pane(self, pane_id: str) -> bool:
        """Load initial data: INITIALIZING -> LOADING -> READY, or ERROR."""
        pane = self.panes.get(pane_id)
        if pane is None:
            return False

        pane.set_state(PaneState.LOADING)
        try:
            data = await load_data(pane.provider) if pane.provider else {"initialized": True}
        except Exception as e:
            if self.panes.get(pane_id) is pane:
                pane.set_state(PaneState.ERROR, error=str(e))
            self.metrics.error_count += 1
            if self.error_handler is not None:
                await self.error_handler.handle_error(e, {"type": "pane_initialization", "pane_id": pane_id})
            return False

        if self.panes.get(pane_id) is not pane:
            return False
        pane.set_state(pane.resting_state(), data)
        return True

    async def wait_until_initialized(self) -> None:
        tasks = list(self._init_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def sync_with_layout(self, geometry: LayoutGeometry) -> None:
        """
        Make the registered panes match a layout.

        Panes that left the layout are unregistered, which drops their queued
        updates and discards results of their in-flight updates. New panes are
        registered and focus follows the geometry.
        """
        wanted = geometry.pane_ids
        for pane_id in list(self.panes):
            if pane_id not in wanted:
                self.unregister_pane(pane_id)

        for pane_id in wanted:
            if pane_id not in self.panes:
                self.register_pane(pane_id)

        focused = geometry.focused_pane
        for pane_id, pane in self.panes.items():
            if pane.focused != (pane_id == focused):
                self.set_focus(pane_id, pane_id == focused)

    # =========================================================================
    # Updates
    # =========================================================================

    async def update_pane(
        self,
        pane_id: str,
        data: Any,
        background: bool = False,
        source: str | None = None,
    ) -> bool:
        """
        Apply new data to a pane.

        ``data`` may be a zero-argument callable (sync or async) that is
        evaluated now. On failure the pane enters ERROR, keeps its last good
        data and the error goes to the error handler.

        Returns:
            True if the data was applied
        """
        pane = self.panes.get(pane_id)
        if pane is None:
            logger.warning(f"Attempted to update non-existent pane: {pane_id}")
            return False

        started = time.perf_counter()
        if not background:
            pane.set_state(PaneState.UPDATING)
        self._active.add(pane_id)

        try:
            payload = await load_data(data)
        except Exception as e:
            last_good = pane.data
            if self.panes.get(pane_id) is pane:
                pane.set_state(PaneState.ERROR, error=str(e))
            self.metrics.error_count += 1
            self.events.emit(EngineEvent.PANE_UPDATE_FAILED, {"pane_id": pane_id, "error": str(e)})
            if self.error_handler is not None:
                await self.error_handler.handle_error(
                    e,
                    {"type": "pane_update", "pane_id": pane_id, "source": source, "snapshot": last_good},
                )
            return False
        finally:
            self._active.discard(pane_id)

        if self.panes.get(pane_id) is not pane:
            logger.debug(f"Discarding update for {pane_id}, pane left the layout")
            return False

        pane.set_state(pane.resting_state(), payload)

        elapsed = (time.perf_counter() - started) * 1000
        self._record_update_time(elapsed)
        if self.performance_monitor is not None:
            self.performance_monitor.record_update_latency(elapsed, pane_id=pane_id, source=source)
        return True

    def queue_update(self, pane_id: str, data: Any, background: bool = False, source: str | None = None) -> None:
        """Queue an update and re-arm the debounce timer."""
        self._queue.append(QueuedUpdate(pane_id, data, background, source))
        self._timer.trigger()

    async def process_update_queue(self) -> int:
        """
        Apply queued updates, keeping only the latest per pane.

        Returns:
            Number of updates applied
        """
        if not self._queue:
            return 0

        latest: dict[str, QueuedUpdate] = {}
        for update in self._queue:
            latest[update.pane_id] = update
        self._queue.clear()

        applied = 0
        for batch in create_batches(list(latest.values()), self.config.max_concurrent_updates):
            results = await asyncio.gather(
                *(self.update_pane(u.pane_id, u.data, background=u.background, source=u.source) for u in batch)
            )
            applied += sum(1 for r in results if r)
        return applied

    def cancel_pending_updates(self, pane_id: str | None = None) -> int:
        """Drop queued updates for one pane, or all of them."""
        before = len(self._queue)
        if pane_id is None:
            self._queue.clear()
        else:
            self._queue = [u for u in self._queue if u.pane_id != pane_id]
        if not self._queue:
            self._timer.cancel()
        return before - len(self._queue)

    @property
    def pending_updates(self) -> int:
        return len(self._queue)

    @property
    def active_updates(self) -> set[str]:
        return set(self._active)

    async def flush(self) -> int:
        """Apply queued updates now instead of waiting for the debounce window."""
        self._timer.cancel()
        return await self.process_update_queue()

    async def refresh_pane(self, pane_id: str) -> bool:
        """Reload a pane through its provider."""
        pane = self.panes.get(pane_id)
        if pane is None:
            return False
        if pane.provider is not None:
            return await self.update_pane(pane_id, pane.provider, source="refresh")
        return await self.update_pane(pane_id, {"refreshed": True, "timestamp": time.time()}, source="refresh")

    async def refresh_all_panes(self) -> int:
        """Refresh every refreshable pane, one after another."""
        refreshed = 0
        for pane_id in list(self.panes):
            pane = self.panes.get(pane_id)
            if pane is not None and pane.config.refreshable:
                if await self.refresh_pane(pane_id):
                    refreshed += 1
        return refreshed

    async def reset_pane(self, pane_id: str) -> bool:
        """Clear a pane's state and load it again from scratch."""
        pane = self.panes.get(pane_id)
        if pane is None:
            return False

        self.cancel_pending_updates(pane_id)
        pane.data = None
        pane.error = None
        pane.collapsed = False
        pane.set_state(PaneState.INITIALIZING)
        return await self.initialize_pane(pane_id)

    # =========================================================================
    # Focus and collapse
    # =========================================================================

    def set_focus(self, pane_id: str, focused: bool) -> bool:
        pane = self.panes.get(pane_id)
        if pane is None:
            return False
        pane.set_focus(focused)
        return True

    def toggle_collapse(self, pane_id: str) -> bool:
        pane = self.panes.get(pane_id)
        if pane is None or not pane.config.collapsible:
            return False
        pane.toggle_collapse()
        self.events.emit(EngineEvent.PANE_COLLAPSE_TOGGLED, {"pane_id": pane_id, "collapsed": pane.collapsed})
        return True

    @property
    def focused_pane(self) -> str | None:
        for pane_id, pane in self.panes.items():
            if pane.focused:
                return pane_id
        return None

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, callback: PaneSubscriber) -> Callable[[], None]:
        """Receive state changes of every pane."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback) if callback in self._subscribers else None

    def _on_pane_change(self, change: PaneStateChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"Error in pane manager subscriber: {e}")
        self.events.emit(EngineEvent.PANE_STATE_CHANGED, {"change": change})

    def get_pane_state(self, pane_id: str) -> dict[str, Any] | None:
        pane = self.panes.get(pane_id)
        return pane.get_status() if pane else None

    def get_all_pane_states(self) -> dict[str, dict[str, Any]]:
        return {pane_id: pane.get_status() for pane_id, pane in self.panes.items()}

    def _record_update_time(self, elapsed_ms: float) -> None:
        self.metrics.total_updates += 1
        n = self.metrics.total_updates
        self.metrics.average_update_ms += (elapsed_ms - self.metrics.average_update_ms) / n

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics.to_dict(),
            "registered_panes": len(self.panes),
            "active_updates": len(self._active),
            "queued_updates": len(self._queue),
        }

    def reset_metrics(self) -> None:
        self.metrics = PaneMetrics()

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        self._queue.clear()
        await self._timer.close()

        tasks = list(self._init_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._init_tasks.clear()


def create_batches(items: list[Any], size: int) -> list[list[Any]]:
    """Split items into consecutive batches of at most ``size``."""
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]
