"""Exception hierarchy for the layout engine."""

from __future__ import annotations


class TermdeckError(Exception):
    """Base class for engine errors"""
    pass


class InvalidPresetError(TermdeckError):
    """Raised when a preset name is not registered"""

    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        self.available = available or []
        message = f"Unknown preset: {name!r}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class PresetValidationError(TermdeckError):
    """Raised when a preset definition is internally inconsistent"""
    pass


class PaneRegistrationError(TermdeckError):
    """Raised for duplicate or unknown pane registrations"""
    pass


class WatcherInitializationError(TermdeckError):
    """Raised when the change watcher cannot start"""

    def __init__(self, message: str, missing: list[str] | None = None):
        self.missing = missing or []
        super().__init__(message)
