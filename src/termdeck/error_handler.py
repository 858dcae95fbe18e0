"""
Error Handler

Classifies failures by category and severity, picks a recovery strategy and
runs it. Recovery actions are signalled through events so the component that
owns the failed operation decides what "retry" or "reset" means for it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
import time
import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any

from termdeck.config import ErrorHandlingConfig
from termdeck.events import EngineEvent, EventEmitter

if TYPE_CHECKING:
    from termdeck.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


# =============================================================================
# Classification tables
# =============================================================================


class ErrorCategory(Enum):
    RENDER = "render"
    STATE = "state"
    KEYBOARD = "keyboard"
    EXTERNAL_TOOL = "external_tool"
    LAYOUT = "layout"
    PERFORMANCE = "performance"
    NETWORK = "network"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    RESET = "reset"
    IGNORE = "ignore"
    ESCALATE = "escalate"


# Checked in order; the first category with a matching pattern wins
ERROR_PATTERNS: dict[ErrorCategory, list[re.Pattern[str]]] = {
    category: [re.compile(p, re.IGNORECASE) for p in patterns]
    for category, patterns in (
        (ErrorCategory.RENDER, [r"render", r"component", r"widget"]),
        (ErrorCategory.STATE, [r"state", r"setstate", r"mounted", r"unmounted"]),
        (ErrorCategory.KEYBOARD, [r"keyboard", r"key", r"input", r"shortcut"]),
        (ErrorCategory.EXTERNAL_TOOL, [r"tool", r"execution", r"external"]),
        (ErrorCategory.LAYOUT, [r"layout", r"pane", r"resize", r"dimension"]),
        (ErrorCategory.PERFORMANCE, [r"performance", r"memory", r"timeout", r"slow"]),
        (ErrorCategory.NETWORK, [r"network", r"fetch", r"connection", r"timeout"]),
        (ErrorCategory.VALIDATION, [r"validation", r"invalid", r"required", r"missing"]),
    )
}

# Error names that indicate a reference to something that does not exist
FATAL_ERROR_NAMES = {"ReferenceError", "NameError", "UnboundLocalError"}

UNCAUGHT_CONTEXT = "uncaught_exception"
UNHANDLED_ASYNC_CONTEXT = "unhandled_async_error"

# Context types a host may report for top-level failures, in either spelling
UNCAUGHT_CONTEXT_TYPES = {UNCAUGHT_CONTEXT, "uncaughtException"}
UNHANDLED_ASYNC_CONTEXT_TYPES = {UNHANDLED_ASYNC_CONTEXT, "unhandledRejection"}

USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.RENDER: "Display issue detected. Attempting to refresh the interface.",
    ErrorCategory.STATE: "Component state issue. Resetting to stable state.",
    ErrorCategory.KEYBOARD: "Keyboard input issue. Please try the action again.",
    ErrorCategory.EXTERNAL_TOOL: "Tool execution failed. Retrying operation.",
    ErrorCategory.LAYOUT: "Layout issue detected. Switching to fallback layout.",
    ErrorCategory.PERFORMANCE: "Performance issue detected. Optimizing system.",
    ErrorCategory.NETWORK: "Network connectivity issue. Retrying connection.",
    ErrorCategory.VALIDATION: "Input validation failed. Please check your input.",
}

SEVERITY_PREFIXES: dict[ErrorSeverity, str] = {
    ErrorSeverity.LOW: "Minor issue: ",
    ErrorSeverity.MEDIUM: "Issue detected: ",
    ErrorSeverity.HIGH: "Important: ",
    ErrorSeverity.CRITICAL: "Critical error: ",
}

_LOG_LEVELS: dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


# =============================================================================
# Records
# =============================================================================


@dataclass
class NormalizedError:
    name: str
    message: str
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "message": self.message, "stack": self.stack}


@dataclass
class ErrorClassification:
    category: ErrorCategory
    severity: ErrorSeverity
    strategy: RecoveryStrategy
    user_message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "strategy": self.strategy.value,
            "user_message": self.user_message,
        }


@dataclass
class ErrorRecord:
    """One handled failure"""
    error: NormalizedError
    context: dict[str, Any]
    classification: ErrorClassification
    id: str = field(default_factory=lambda: f"err_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)
    handled: bool = False
    recovered: bool = False

    @property
    def operation_id(self) -> str:
        return get_operation_id(self.context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "error": self.error.to_dict(),
            "context": {k: v for k, v in self.context.items() if k != "snapshot"},
            "classification": self.classification.to_dict(),
            "handled": self.handled,
            "recovered": self.recovered,
        }


# =============================================================================
# Pure helpers
# =============================================================================


def normalize_error(error: Any) -> NormalizedError:
    """Reduce an exception, string, mapping or other value to name/message/stack."""
    if isinstance(error, BaseException):
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return NormalizedError(type(error).__name__, str(error), stack)

    if isinstance(error, str):
        return NormalizedError("Error", error)

    if isinstance(error, dict):
        return NormalizedError(
            str(error.get("name", "Error")),
            str(error.get("message", error)),
            error.get("stack"),
        )

    return NormalizedError("UnknownError", str(error))


def determine_category(error: NormalizedError, context: dict[str, Any]) -> ErrorCategory:
    context_type = str(context.get("type") or "")
    for category, patterns in ERROR_PATTERNS.items():
        if any(p.search(context_type) for p in patterns):
            return category

    message = error.message or ""
    stack = error.stack or ""
    for category, patterns in ERROR_PATTERNS.items():
        if any(p.search(message) or p.search(stack) for p in patterns):
            return category

    return ErrorCategory.UNKNOWN


def determine_severity(error: NormalizedError, context: dict[str, Any], category: ErrorCategory) -> ErrorSeverity:
    if (
        context.get("type") in UNCAUGHT_CONTEXT_TYPES
        or context.get("severity") in (ErrorSeverity.CRITICAL, ErrorSeverity.CRITICAL.value)
        or error.name in FATAL_ERROR_NAMES
    ):
        return ErrorSeverity.CRITICAL

    if context.get("type") in UNHANDLED_ASYNC_CONTEXT_TYPES or category in (
        ErrorCategory.LAYOUT,
        ErrorCategory.PERFORMANCE,
    ):
        return ErrorSeverity.HIGH

    if category in (ErrorCategory.RENDER, ErrorCategory.EXTERNAL_TOOL, ErrorCategory.NETWORK):
        return ErrorSeverity.MEDIUM

    return ErrorSeverity.LOW


def determine_strategy(category: ErrorCategory, severity: ErrorSeverity) -> RecoveryStrategy:
    if severity is ErrorSeverity.CRITICAL:
        return RecoveryStrategy.ESCALATE
    if category in (ErrorCategory.NETWORK, ErrorCategory.EXTERNAL_TOOL):
        return RecoveryStrategy.RETRY
    if category in (ErrorCategory.RENDER, ErrorCategory.LAYOUT):
        return RecoveryStrategy.FALLBACK
    if category is ErrorCategory.STATE:
        return RecoveryStrategy.RESET
    return RecoveryStrategy.IGNORE


def user_message(category: ErrorCategory, severity: ErrorSeverity) -> str:
    base = USER_MESSAGES.get(category, "An unexpected issue occurred.")
    return SEVERITY_PREFIXES[severity] + base


def classify(error: Any, context: dict[str, Any] | None = None) -> ErrorClassification:
    """
    Classify a failure. Deterministic in (error, context).

    Args:
        error: Exception, message string, mapping or NormalizedError
        context: Where the failure happened (type, pane_id, ...)
    """
    context = context or {}
    normalized = error if isinstance(error, NormalizedError) else normalize_error(error)
    category = determine_category(normalized, context)
    severity = determine_severity(normalized, context, category)
    strategy = determine_strategy(category, severity)
    return ErrorClassification(category, severity, strategy, user_message(category, severity))


def get_operation_id(context: dict[str, Any]) -> str:
    """Retry and fallback key: operation id, pane id, component, or context type."""
    for key in ("operation_id", "pane_id", "component", "type"):
        value = context.get(key)
        if value:
            return str(value)
    return "unknown"


# =============================================================================
# Error Handler
# =============================================================================


class ErrorHandler:
    """
    Records failures and drives recovery.

    Retry budgets and fallback snapshots are keyed by operation id, so
    unrelated failures on the same pane share one retry budget.
    """

    def __init__(
        self,
        config: ErrorHandlingConfig | None = None,
        events: EventEmitter | None = None,
        performance_monitor: PerformanceMonitor | None = None,
    ):
        self.config = config or ErrorHandlingConfig()
        self.events = events or EventEmitter()
        self.performance_monitor = performance_monitor

        self.history: deque[ErrorRecord] = deque(maxlen=self.config.max_history)
        self.retry_attempts: dict[str, int] = {}
        self.fallback_states: dict[str, dict[str, Any]] = {}

        self._previous_excepthook: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: Any = None
        self._tasks: set[asyncio.Task[ErrorRecord]] = set()

    # =========================================================================
    # Handling
    # =========================================================================

    def record(self, error: Any, context: dict[str, Any] | None = None) -> ErrorRecord:
        """Normalize, classify, store and log a failure without recovering."""
        context = dict(context or {})
        normalized = normalize_error(error)
        record = ErrorRecord(error=normalized, context=context, classification=classify(normalized, context))
        self.history.append(record)

        if self.performance_monitor is not None:
            self.performance_monitor.record_error(normalized.message, context)

        classification = record.classification
        logger.log(
            _LOG_LEVELS[classification.severity],
            f"[{classification.category.value.upper()}] {normalized.name}: {normalized.message}",
        )
        self.events.emit(EngineEvent.ERROR_OCCURRED, {"record": record})
        return record

    async def handle_error(self, error: Any, context: dict[str, Any] | None = None) -> ErrorRecord:
        """
        Handle a failure: record it, then run its recovery strategy.

        Returns:
            The stored ErrorRecord with handled/recovered set
        """
        record = self.record(error, context)

        if self.config.enable_recovery:
            record.recovered = await self.attempt_recovery(record)
            if record.recovered:
                self.events.emit(EngineEvent.ERROR_RECOVERED, {"record": record})

        record.handled = True
        return record

    async def attempt_recovery(self, record: ErrorRecord) -> bool:
        strategy = record.classification.strategy

        if strategy is RecoveryStrategy.RETRY:
            return await self._retry(record)
        if strategy is RecoveryStrategy.FALLBACK:
            return self._fallback(record)
        if strategy is RecoveryStrategy.RESET:
            self.events.emit(EngineEvent.RESET_OPERATION, {"record": record, "operation_id": record.operation_id})
            return True
        if strategy is RecoveryStrategy.IGNORE:
            return True

        self._escalate(record)
        return False

    async def _retry(self, record: ErrorRecord) -> bool:
        operation_id = record.operation_id
        attempts = self.retry_attempts.get(operation_id, 0)

        if attempts >= self.config.max_retries:
            del self.retry_attempts[operation_id]
            logger.warning(f"Giving up on {operation_id} after {attempts} retries")
            return False

        self.retry_attempts[operation_id] = attempts + 1
        await asyncio.sleep(self.config.retry_delay_ms / 1000)

        self.events.emit(
            EngineEvent.RETRY_OPERATION,
            {
                "record": record,
                "operation_id": operation_id,
                "attempt": attempts + 1,
                "max_retries": self.config.max_retries,
            },
        )
        return True

    def _fallback(self, record: ErrorRecord) -> bool:
        operation_id = record.operation_id
        self.fallback_states[operation_id] = {"timestamp": time.time(), "context": record.context}
        self.events.emit(EngineEvent.FALLBACK_OPERATION, {"record": record, "operation_id": operation_id})
        return True

    def _escalate(self, record: ErrorRecord) -> None:
        logger.critical(
            f"CRITICAL ERROR ESCALATED: {record.error.name}: {record.error.message}"
            + (f"\n{record.error.stack}" if record.error.stack else "")
        )
        self.events.emit(EngineEvent.ERROR_ESCALATED, {"record": record})

    def restore_snapshot(self, operation_id: str) -> dict[str, Any] | None:
        """Take back the context stored by a fallback, if any."""
        return self.fallback_states.pop(operation_id, None)

    def reset_retries(self, operation_id: str | None = None) -> None:
        """Forget retry counts for one operation, or for all of them."""
        if operation_id is None:
            self.retry_attempts.clear()
        else:
            self.retry_attempts.pop(operation_id, None)

    # =========================================================================
    # Process-wide hooks
    # =========================================================================

    def install_global_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Route uncaught exceptions and unhandled asyncio task errors here.

        Uncaught exceptions are classified as critical; the previous
        sys.excepthook still runs afterwards.
        """
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._excepthook

        loop = loop or asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)

    def uninstall_global_handlers(self) -> None:
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_loop_handler)
            self._loop = None
            self._previous_loop_handler = None

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        record = self.record(exc, {"type": UNCAUGHT_CONTEXT, "severity": ErrorSeverity.CRITICAL.value})
        self._escalate(record)
        record.handled = True
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception") or context.get("message", "unknown asyncio error")
        task = loop.create_task(
            self.handle_error(error, {"type": UNHANDLED_ASYNC_CONTEXT, "severity": ErrorSeverity.HIGH.value})
        )
        self._tasks.add(task)
        task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task[ErrorRecord]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Handling an unhandled async error failed: {task.exception()}")

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_recovery_rate(self) -> float:
        """Fraction of recorded errors that recovered; 1.0 with no errors."""
        if not self.history:
            return 1.0
        return sum(1 for r in self.history if r.recovered) / len(self.history)

    def get_error_statistics(self) -> dict[str, Any]:
        cutoff = time.time() - 3600
        recent = [r for r in self.history if r.timestamp >= cutoff]

        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for record in recent:
            category = record.classification.category.value
            severity = record.classification.severity.value
            by_category[category] = by_category.get(category, 0) + 1
            by_severity[severity] = by_severity.get(severity, 0) + 1

        return {
            "total": len(self.history),
            "recent": len(recent),
            "by_category": by_category,
            "by_severity": by_severity,
            "recovery_rate": self.get_recovery_rate(),
        }

    def clear_history(self) -> None:
        self.history.clear()
        self.retry_attempts.clear()
        self.fallback_states.clear()
