"""
Layout presets and pane definitions.

A preset names an ordered set of panes, the layout kind that arranges them,
the minimum terminal size it needs and per-pane priority weights.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from termdeck.exceptions import InvalidPresetError, PresetValidationError


class LayoutKind(Enum):
    """Pane arrangements"""
    SINGLE = "single"
    TRIPLE = "triple"
    QUAD = "quad"
    FULL = "full"

    @property
    def pane_count(self) -> int:
        return {"single": 1, "triple": 3, "quad": 4, "full": 5}[self.value]


@dataclass(frozen=True)
class Preset:
    """A named layout configuration"""
    name: str
    title: str
    description: str
    panes: tuple[str, ...]
    layout: LayoutKind
    min_width: int
    min_height: int
    priority: dict[str, float]
    shortcuts: dict[str, str] = field(default_factory=dict)

    def fits(self, width: int, height: int) -> bool:
        return width >= self.min_width and height >= self.min_height

    @property
    def min_size(self) -> str:
        return f"{self.min_width}x{self.min_height}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "panes": list(self.panes),
            "layout": self.layout.value,
            "min_width": self.min_width,
            "min_height": self.min_height,
            "priority": dict(self.priority),
            "shortcuts": dict(self.shortcuts),
        }


@dataclass(frozen=True)
class PaneConfig:
    """Static description of a pane kind"""
    id: str
    title: str
    description: str
    collapsible: bool = True
    refreshable: bool = True
    shortcuts: tuple[str, ...] = ()
    update_triggers: tuple[str, ...] = ()


# =============================================================================
# Built-in tables
# =============================================================================

_BASE_SHORTCUTS = {
    "n": "next-task",
    "p": "report-progress",
    "a": "advance-phase",
}

BUILTIN_PRESETS: dict[str, Preset] = {
    "quick": Preset(
        name="quick",
        title="Quick Mode",
        description="Single-pane compact view for essential status",
        panes=("progress",),
        layout=LayoutKind.SINGLE,
        min_width=60,
        min_height=10,
        priority={"progress": 1.0},
        shortcuts={**_BASE_SHORTCUTS, "r": "refresh", "h": "help", "q": "quit"},
    ),
    "development": Preset(
        name="development",
        title="Development Mode",
        description="3-pane layout for active development workflow",
        panes=("progress", "tasks", "capabilities"),
        layout=LayoutKind.TRIPLE,
        min_width=120,
        min_height=24,
        priority={"progress": 0.3, "tasks": 0.45, "capabilities": 0.25},
        shortcuts={
            **_BASE_SHORTCUTS,
            "c": "analyze-capabilities",
            "g": "analyze-gaps",
            "r": "refresh",
            "h": "help",
            "q": "quit",
        },
    ),
    "monitoring": Preset(
        name="monitoring",
        title="Monitoring Mode",
        description="4-pane layout for workflow monitoring and debugging",
        panes=("progress", "tasks", "logs", "tools"),
        layout=LayoutKind.QUAD,
        min_width=160,
        min_height=30,
        priority={"progress": 0.25, "tasks": 0.35, "logs": 0.25, "tools": 0.15},
        shortcuts={
            **_BASE_SHORTCUTS,
            "l": "view-logs",
            "t": "execute-tool",
            "r": "refresh",
            "h": "help",
            "q": "quit",
        },
    ),
    "debug": Preset(
        name="debug",
        title="Debug Mode",
        description="5-pane layout with all available information",
        panes=("progress", "tasks", "capabilities", "logs", "tools"),
        layout=LayoutKind.FULL,
        min_width=180,
        min_height=35,
        priority={"progress": 0.2, "tasks": 0.3, "capabilities": 0.2, "logs": 0.2, "tools": 0.1},
        shortcuts={
            **_BASE_SHORTCUTS,
            "c": "analyze-capabilities",
            "g": "analyze-gaps",
            "l": "view-logs",
            "t": "execute-tool",
            "d": "discover-agent",
            "r": "refresh",
            "h": "help",
            "q": "quit",
        },
    ),
}

# Presets selected by the number keys, in order
PRESET_ORDER = ("quick", "development", "monitoring", "debug")

PANE_CONFIGS: dict[str, PaneConfig] = {
    "progress": PaneConfig(
        id="progress",
        title="Progress",
        description="Project phase progression and completion status",
        shortcuts=("a", "r", "space"),
        update_triggers=(".guidant/workflow/", ".guidant/project/config.json"),
    ),
    "tasks": PaneConfig(
        id="tasks",
        title="Tasks",
        description="Current and upcoming tasks with dependencies",
        shortcuts=("n", "p", "enter"),
        update_triggers=(".guidant/ai/task-tickets/", ".guidant/context/current-task.json"),
    ),
    "capabilities": PaneConfig(
        id="capabilities",
        title="Capabilities",
        description="AI tools, coverage analysis, and gap recommendations",
        shortcuts=("c", "g", "enter"),
        update_triggers=(".guidant/ai/capabilities.json", ".guidant/ai/agents/"),
    ),
    "logs": PaneConfig(
        id="logs",
        title="Logs",
        description="Real-time tool execution and system activity",
        refreshable=False,
        shortcuts=("f", "c", "enter"),
        update_triggers=(".guidant/context/sessions.json", ".guidant/context/decisions.json"),
    ),
    "tools": PaneConfig(
        id="tools",
        title="Tools",
        description="Direct tool execution and status monitoring",
        shortcuts=("enter", "i", "h"),
        update_triggers=("tool_execution",),
    ),
}


# =============================================================================
# Helpers
# =============================================================================


def get_preset(name: str, presets: dict[str, Preset] | None = None) -> Preset:
    """
    Look up a preset by name.

    Raises:
        InvalidPresetError: If no preset has that name
    """
    presets = presets if presets is not None else BUILTIN_PRESETS
    try:
        return presets[name]
    except KeyError:
        raise InvalidPresetError(name, sorted(presets)) from None


def validate_preset(preset: Preset) -> bool:
    """
    Check a preset definition for internal consistency.

    Raises:
        PresetValidationError: If pane count, weights or sizes are inconsistent
    """
    if len(preset.panes) != preset.layout.pane_count:
        raise PresetValidationError(
            f"Preset {preset.name} has {len(preset.panes)} panes but "
            f"layout {preset.layout.value} needs {preset.layout.pane_count}"
        )

    if len(set(preset.panes)) != len(preset.panes):
        raise PresetValidationError(f"Preset {preset.name} lists a pane twice")

    unknown = [p for p in preset.panes if p not in PANE_CONFIGS]
    if unknown:
        raise PresetValidationError(f"Preset {preset.name} uses unknown panes: {', '.join(unknown)}")

    if set(preset.priority) != set(preset.panes):
        raise PresetValidationError(f"Preset {preset.name} priority weights do not match its panes")

    total = sum(preset.priority.values())
    if abs(total - 1.0) > 0.01:
        raise PresetValidationError(f"Preset {preset.name} priority weights sum to {total:.3f}, expected 1.0")

    if preset.min_width <= 0 or preset.min_height <= 0:
        raise PresetValidationError(f"Preset {preset.name} has a non-positive minimum size")

    return True


def get_available_presets(
    width: int,
    height: int,
    presets: dict[str, Preset] | None = None,
) -> list[dict[str, Any]]:
    """List presets that fit the given terminal size."""
    presets = presets if presets is not None else BUILTIN_PRESETS
    return [
        {
            "name": name,
            "title": preset.title,
            "description": preset.description,
            "panes": len(preset.panes),
            "min_size": preset.min_size,
        }
        for name, preset in presets.items()
        if preset.fits(width, height)
    ]


def recommend_preset(width: int, height: int, presets: dict[str, Preset] | None = None) -> str:
    """Return the largest preset that fits, or quick."""
    presets = presets if presets is not None else BUILTIN_PRESETS
    for name, preset in sorted(presets.items(), key=lambda item: item[1].min_width, reverse=True):
        if preset.fits(width, height):
            return name
    return "quick"
