"""
Performance Monitor

Tracks render time, keyboard response, update latency, external tool
executions, errors and process memory against fixed targets. Samples are kept
in bounded ring buffers; crossing a target raises an alert event but never
blocks or raises in the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

import psutil

from termdeck.config import PerformanceConfig
from termdeck.events import EngineEvent, EventEmitter

logger = logging.getLogger(__name__)


PERFORMANCE_TARGETS: dict[str, float] = {
    "update_latency": 100,  # ms
    "memory_usage": 100 * 1024 * 1024,  # bytes
    "keyboard_response": 50,  # ms
    "startup_time": 2000,  # ms
    "render_time": 16,  # ms, one frame at 60fps
    "external_tool_success": 95,  # percent
}

HEALTH_WEIGHTS: dict[str, float] = {
    "performance": 0.4,
    "memory": 0.3,
    "errors": 0.2,
    "external_tools": 0.1,
}

DEGRADED_HEALTH = 0.7
RECENT_WINDOW = 10


class MetricCategory(Enum):
    """Sample buckets"""
    RENDER = "render"
    KEYBOARD = "keyboard"
    UPDATE = "update"
    EXTERNAL_TOOL = "external_tool"
    MEMORY = "memory"
    ERRORS = "errors"


# Timer name prefix -> (bucket, target key)
_TIMER_ROUTES: tuple[tuple[str, MetricCategory, str], ...] = (
    ("render", MetricCategory.RENDER, "render_time"),
    ("keyboard", MetricCategory.KEYBOARD, "keyboard_response"),
    ("update", MetricCategory.UPDATE, "update_latency"),
    ("tool", MetricCategory.EXTERNAL_TOOL, ""),
    ("external", MetricCategory.EXTERNAL_TOOL, ""),
)


@dataclass
class PerformanceSample:
    """One measurement"""
    timestamp: float
    category: MetricCategory
    value: float
    target: float | None = None
    percentage: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "category": self.category.value,
            "value": self.value,
            "target": self.target,
            "percentage": self.percentage,
            "metadata": self.metadata,
        }


@dataclass
class SessionCounters:
    """Running totals since the monitor was created"""
    start_time: float = field(default_factory=time.time)
    render_count: int = 0
    keyboard_events: int = 0
    update_events: int = 0
    error_count: int = 0
    tool_calls: int = 0
    tool_successes: int = 0
    startup_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_ms": (time.time() - self.start_time) * 1000,
            "render_count": self.render_count,
            "keyboard_events": self.keyboard_events,
            "update_events": self.update_events,
            "error_count": self.error_count,
            "tool_calls": self.tool_calls,
            "tool_successes": self.tool_successes,
            "startup_ms": self.startup_ms,
        }


def sample_process_memory() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


class PerformanceMonitor:
    """
    Collects performance samples and derives a composite health score.

    Timers are routed to buckets by operation name prefix: ``render*``,
    ``keyboard*``, ``update*`` and ``tool*``/``external*``.
    """

    def __init__(
        self,
        config: PerformanceConfig | None = None,
        events: EventEmitter | None = None,
    ):
        self.config = config or PerformanceConfig()
        self.events = events or EventEmitter()
        self.targets = dict(PERFORMANCE_TARGETS)

        self.metrics: dict[MetricCategory, deque[PerformanceSample]] = {
            category: deque(maxlen=self.config.max_samples) for category in MetricCategory
        }
        self.session = SessionCounters()
        self.alerts: deque[dict[str, Any]] = deque(maxlen=50)

        self._timers: dict[str, tuple[float, dict[str, Any]]] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the memory sampler and the periodic health check."""
        if self._running:
            return

        self._running = True
        if self.config.enable_memory_tracking:
            self._tasks.append(asyncio.create_task(self._memory_loop()))
        self._tasks.append(asyncio.create_task(self._health_loop()))

    async def stop(self) -> None:
        """Stop background sampling"""
        self._running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    @property
    def running(self) -> bool:
        return self._running

    async def _memory_loop(self) -> None:
        interval = self.config.sample_interval_ms / 1000
        while self._running:
            try:
                self.record_memory_usage(sample_process_memory())
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except psutil.Error as e:
                logger.warning(f"Memory sampling failed: {e}")
                await asyncio.sleep(interval)

    async def _health_loop(self) -> None:
        interval = self.config.health_check_interval_ms / 1000
        while self._running:
            try:
                await asyncio.sleep(interval)
                self.perform_health_check()
            except asyncio.CancelledError:
                break

    # =========================================================================
    # Recording
    # =========================================================================

    def start_timer(self, operation: str, **metadata: Any) -> str:
        """Begin timing an operation. Restarting a running timer resets it."""
        self._timers[operation] = (time.perf_counter(), metadata)
        return operation

    def end_timer(self, operation: str) -> float | None:
        """
        Stop a timer and record its duration.

        Returns:
            Duration in milliseconds, or None if no timer was running
        """
        entry = self._timers.pop(operation, None)
        if entry is None:
            logger.debug(f"Timer not found for operation: {operation}")
            return None

        started, metadata = entry
        duration = (time.perf_counter() - started) * 1000
        self.record_timing(operation, duration, metadata)
        return duration

    @contextmanager
    def measure(self, operation: str, **metadata: Any) -> Iterator[None]:
        """Time the body of a ``with`` block."""
        self.start_timer(operation, **metadata)
        try:
            yield
        finally:
            self.end_timer(operation)

    def record_timing(self, operation: str, duration_ms: float, metadata: dict[str, Any] | None = None) -> None:
        """Route a duration to its bucket by operation name prefix."""
        metadata = {"operation": operation, **(metadata or {})}
        for prefix, category, target_key in _TIMER_ROUTES:
            if operation.startswith(prefix):
                if category is MetricCategory.EXTERNAL_TOOL:
                    self.record_tool_execution(
                        duration_ms,
                        success=metadata.get("success", True),
                        tool_name=metadata.get("tool_name"),
                        error=metadata.get("error"),
                    )
                else:
                    self._record_duration(category, duration_ms, target_key, metadata)
                return
        logger.debug(f"No metric bucket for operation: {operation}")

    def _record_duration(
        self,
        category: MetricCategory,
        duration_ms: float,
        target_key: str,
        metadata: dict[str, Any],
    ) -> PerformanceSample:
        target = self.targets[target_key]
        sample = PerformanceSample(
            timestamp=time.time(),
            category=category,
            value=duration_ms,
            target=target,
            percentage=duration_ms / target * 100,
            metadata=metadata,
        )
        self.metrics[category].append(sample)

        if category is MetricCategory.RENDER:
            self.session.render_count += 1
        elif category is MetricCategory.KEYBOARD:
            self.session.keyboard_events += 1
        elif category is MetricCategory.UPDATE:
            self.session.update_events += 1

        if duration_ms > target * self.config.alert_threshold:
            self._alert(
                category.value,
                f"Slow {category.value}: {duration_ms:.1f}ms (target: {target:g}ms)",
                sample=sample.to_dict(),
            )
        return sample

    def record_render_time(self, duration_ms: float, **metadata: Any) -> PerformanceSample:
        return self._record_duration(MetricCategory.RENDER, duration_ms, "render_time", metadata)

    def record_keyboard_response(self, duration_ms: float, **metadata: Any) -> PerformanceSample:
        return self._record_duration(MetricCategory.KEYBOARD, duration_ms, "keyboard_response", metadata)

    def record_update_latency(self, duration_ms: float, **metadata: Any) -> PerformanceSample:
        return self._record_duration(MetricCategory.UPDATE, duration_ms, "update_latency", metadata)

    def record_tool_execution(
        self,
        duration_ms: float,
        success: bool = True,
        tool_name: str | None = None,
        error: str | None = None,
    ) -> PerformanceSample:
        """Record one external tool execution and check the success rate."""
        sample = PerformanceSample(
            timestamp=time.time(),
            category=MetricCategory.EXTERNAL_TOOL,
            value=duration_ms,
            metadata={"success": bool(success), "tool_name": tool_name, "error": error},
        )
        self.metrics[MetricCategory.EXTERNAL_TOOL].append(sample)
        self.session.tool_calls += 1
        if success:
            self.session.tool_successes += 1

        success_rate = self.session.tool_successes / self.session.tool_calls * 100
        target = self.targets["external_tool_success"]
        if success_rate < target:
            self._alert(
                "external_tool",
                f"External tool success rate: {success_rate:.1f}% (target: {target:g}%)",
                sample={"success_rate": success_rate, "total_calls": self.session.tool_calls},
            )
        return sample

    def record_memory_usage(self, used_bytes: int) -> PerformanceSample:
        target = self.targets["memory_usage"]
        sample = PerformanceSample(
            timestamp=time.time(),
            category=MetricCategory.MEMORY,
            value=float(used_bytes),
            target=target,
            percentage=used_bytes / target * 100,
        )
        self.metrics[MetricCategory.MEMORY].append(sample)

        if sample.percentage > self.config.alert_threshold * 100:
            self._alert(
                "memory",
                f"Memory usage at {sample.percentage:.1f}% of target",
                sample=sample.to_dict(),
            )
        return sample

    def record_error(self, error: BaseException | str, context: dict[str, Any] | None = None) -> None:
        sample = PerformanceSample(
            timestamp=time.time(),
            category=MetricCategory.ERRORS,
            value=1,
            metadata={"error": str(error), "context_type": (context or {}).get("type")},
        )
        self.metrics[MetricCategory.ERRORS].append(sample)
        self.session.error_count += 1

    def mark_startup_complete(self) -> float:
        """Record time since the monitor was created as the startup time."""
        duration = (time.time() - self.session.start_time) * 1000
        self.session.startup_ms = duration
        target = self.targets["startup_time"]
        if duration > target * self.config.alert_threshold:
            self._alert("startup", f"Slow startup: {duration:.0f}ms (target: {target:g}ms)")
        return duration

    def _alert(self, alert_type: str, message: str, **extra: Any) -> None:
        alert = {"type": alert_type, "message": message, "timestamp": time.time(), **extra}
        self.alerts.append(alert)
        logger.debug(message)
        self.events.emit(EngineEvent.PERFORMANCE_ALERT, alert)

    # =========================================================================
    # Health
    # =========================================================================

    def get_recent_samples(self, category: MetricCategory, count: int = RECENT_WINDOW) -> list[PerformanceSample]:
        samples = self.metrics[category]
        return list(samples)[-count:]

    def _metric_health(self, category: MetricCategory, target: float) -> float:
        recent = self.get_recent_samples(category)
        if not recent:
            return 1.0
        average = sum(s.value for s in recent) / len(recent)
        return max(0.0, 1 - max(0.0, average / target - 1))

    def get_memory_health(self) -> float:
        recent = self.get_recent_samples(MetricCategory.MEMORY)
        if not recent:
            return 1.0
        average = sum(s.percentage or 0 for s in recent) / len(recent)
        return max(0.0, 1 - average / 100)

    def get_performance_health(self) -> float:
        return (
            self._metric_health(MetricCategory.RENDER, self.targets["render_time"])
            + self._metric_health(MetricCategory.KEYBOARD, self.targets["keyboard_response"])
            + self._metric_health(MetricCategory.UPDATE, self.targets["update_latency"])
        ) / 3

    def get_error_health(self) -> float:
        recent = self.get_recent_samples(MetricCategory.ERRORS)
        return max(0.0, 1 - len(recent) / RECENT_WINDOW)

    def get_tool_health(self) -> float:
        if self.session.tool_calls == 0:
            return 1.0
        return self.session.tool_successes / self.session.tool_calls

    def get_health_status(self) -> dict[str, Any]:
        """
        Composite health score and its components, each in 0..1.

        Returns:
            Dict with overall, performance, memory, errors, external_tools and
            session counters
        """
        scores = {
            "performance": self.get_performance_health(),
            "memory": self.get_memory_health(),
            "errors": self.get_error_health(),
            "external_tools": self.get_tool_health(),
        }
        overall = sum(scores[key] * weight for key, weight in HEALTH_WEIGHTS.items())
        return {"overall": overall, **scores, "session": self.session.to_dict()}

    def perform_health_check(self) -> dict[str, Any]:
        health = self.get_health_status()
        self.events.emit(EngineEvent.HEALTH_CHECK, {"source": "performance", "health": health})

        if health["overall"] < DEGRADED_HEALTH:
            self._alert(
                "degraded",
                f"System health degraded: {health['overall'] * 100:.1f}%",
                health=health,
            )
        return health

    # =========================================================================
    # Summaries
    # =========================================================================

    def get_metric_summary(self, category: MetricCategory) -> dict[str, Any]:
        samples = list(self.metrics[category])
        if not samples:
            return {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0}

        values = [s.value for s in samples]
        return {
            "count": len(values),
            "avg": sum(values) / len(values),
            "min": min(values),
            "max": max(values),
        }

    def get_performance_summary(self) -> dict[str, Any]:
        return {
            "targets": dict(self.targets),
            "health": self.get_health_status(),
            "metrics": {category.value: self.get_metric_summary(category) for category in MetricCategory},
            "alerts": list(self.alerts),
        }
