"""
Layout Manager

Turns a preset and a terminal size into pane rectangles, keeps the active
preset and the focused pane, and picks a smaller preset when the terminal
cannot hold the requested one.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field, replace
from typing import Any

from termdeck.presets import (
    BUILTIN_PRESETS,
    LayoutKind,
    Preset,
    get_available_presets,
    get_preset,
)

logger = logging.getLogger(__name__)

# Columns / rows reserved for padding, header, footer and borders
HORIZONTAL_CHROME = 4
VERTICAL_CHROME = 6

DEFAULT_TERMINAL_SIZE = (100, 30)


# =============================================================================
# Geometry
# =============================================================================


@dataclass(frozen=True)
class PaneRect:
    """Position and size of one pane inside the usable area"""
    id: str
    x: int
    y: int
    width: int
    height: int
    focused: bool = False

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "focused": self.focused,
        }


@dataclass(frozen=True)
class LayoutGeometry:
    """Pane rectangles for one preset at one terminal size"""
    kind: LayoutKind
    panes: tuple[PaneRect, ...]
    width: int
    height: int

    @property
    def pane_ids(self) -> list[str]:
        return [p.id for p in self.panes]

    @property
    def focused_pane(self) -> str | None:
        for pane in self.panes:
            if pane.focused:
                return pane.id
        return None

    def get(self, pane_id: str) -> PaneRect | None:
        for pane in self.panes:
            if pane.id == pane_id:
                return pane
        return None

    def rows(self) -> list[list[PaneRect]]:
        """Group panes into rows by their y coordinate, top to bottom."""
        by_y: dict[int, list[PaneRect]] = {}
        for pane in self.panes:
            by_y.setdefault(pane.y, []).append(pane)
        return [sorted(by_y[y], key=lambda p: p.x) for y in sorted(by_y)]

    def with_focus(self, pane_id: str) -> LayoutGeometry:
        return replace(self, panes=tuple(replace(p, focused=(p.id == pane_id)) for p in self.panes))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "width": self.width,
            "height": self.height,
            "panes": [p.to_dict() for p in self.panes],
        }


def usable_area(width: int, height: int) -> tuple[int, int]:
    return max(0, width - HORIZONTAL_CHROME), max(0, height - VERTICAL_CHROME)


def compute_geometry(preset: Preset, width: int, height: int) -> LayoutGeometry:
    """
    Compute pane rectangles for a preset.

    The rectangles tile the usable area (terminal size minus chrome) exactly:
    no gaps, no overlaps. The first pane is focused.

    Args:
        preset: Preset to lay out
        width: Terminal columns
        height: Terminal rows

    Returns:
        LayoutGeometry over the usable area
    """
    w, h = usable_area(width, height)
    ids = preset.panes
    kind = preset.layout

    if kind is LayoutKind.SINGLE:
        rects = [PaneRect(ids[0], 0, 0, w, h)]

    elif kind is LayoutKind.TRIPLE:
        base, remainder = divmod(w, 3)
        widths = [base + (1 if remainder > i else 0) for i in range(3)]
        rects = []
        x = 0
        for pane_id, pane_width in zip(ids, widths):
            rects.append(PaneRect(pane_id, x, 0, pane_width, h))
            x += pane_width

    elif kind is LayoutKind.QUAD:
        top = int(h * 0.7)
        left = int(w * 0.6)
        rects = [
            PaneRect(ids[0], 0, 0, left, top),
            PaneRect(ids[1], left, 0, w - left, top),
            PaneRect(ids[2], 0, top, left, h - top),
            PaneRect(ids[3], left, top, w - left, h - top),
        ]

    elif kind is LayoutKind.FULL:
        top = int(h * 0.65)
        third = w // 3
        half = w // 2
        rects = [
            PaneRect(ids[0], 0, 0, third, top),
            PaneRect(ids[1], third, 0, third, top),
            PaneRect(ids[2], third * 2, 0, w - third * 2, top),
            PaneRect(ids[3], 0, top, half, h - top),
            PaneRect(ids[4], half, top, w - half, h - top),
        ]

    else:
        raise ValueError(f"Unknown layout type: {kind}")

    rects[0] = replace(rects[0], focused=True)
    return LayoutGeometry(kind=kind, panes=tuple(rects), width=w, height=h)


def get_terminal_size() -> tuple[int, int]:
    size = shutil.get_terminal_size(DEFAULT_TERMINAL_SIZE)
    return size.columns, size.lines


# =============================================================================
# Layout Manager
# =============================================================================


@dataclass
class LayoutManager:
    """
    Owns the active preset, terminal size and focused pane.

    Geometry is cached per (preset, size). Changing either clears the cache.
    """

    presets: dict[str, Preset] = field(default_factory=lambda: dict(BUILTIN_PRESETS))
    terminal_size: tuple[int, int] = field(default_factory=get_terminal_size)
    preset: str = "development"

    _cache: dict[tuple[str, str], LayoutGeometry] = field(default_factory=dict, init=False, repr=False)
    _focused: str | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.preset not in self.presets:
            logger.warning(f"Invalid preset '{self.preset}', falling back to 'development'")
            self.preset = "development" if "development" in self.presets else next(iter(self.presets))
        self.preset = self._resolve(self.preset)

    # -------------------------------------------------------------------------
    # Preset and size
    # -------------------------------------------------------------------------

    @property
    def current_preset(self) -> Preset:
        return self.presets[self.preset]

    def set_preset(self, name: str) -> str:
        """
        Switch to a preset.

        If the terminal is too small for it, a preset that fits is used
        instead and a warning is logged.

        Returns:
            Name of the preset actually applied

        Raises:
            InvalidPresetError: If the name is unknown
        """
        get_preset(name, self.presets)
        applied = self._resolve(name)
        if applied != self.preset:
            self.preset = applied
            self._focused = None
        self._cache.clear()
        return applied

    def update_terminal_size(self, width: int, height: int) -> str:
        """
        Record a new terminal size and re-check the active preset.

        Returns:
            Name of the preset in effect after the resize
        """
        self.terminal_size = (width, height)
        self._cache.clear()
        applied = self._resolve(self.preset)
        if applied != self.preset:
            self.preset = applied
            self._focused = None
        return applied

    def _resolve(self, name: str) -> str:
        width, height = self.terminal_size
        preset = self.presets[name]
        if preset.fits(width, height):
            return name
        fallback = self.find_fallback_preset(width, height)
        logger.warning(
            f"Terminal too small for {preset.title} ({width}x{height}), "
            f"using {self.presets[fallback].title} instead"
        )
        return fallback

    def find_fallback_preset(self, width: int, height: int) -> str:
        """First preset by ascending minimum width that fits, else the smallest."""
        ordered = sorted(self.presets.items(), key=lambda item: item[1].min_width)
        for name, preset in ordered:
            if preset.fits(width, height):
                return name
        return "quick" if "quick" in self.presets else ordered[0][0]

    def get_available_presets(self) -> list[dict[str, Any]]:
        width, height = self.terminal_size
        available = get_available_presets(width, height, self.presets)
        for entry in available:
            entry["current"] = entry["name"] == self.preset
        return available

    def validate_terminal_for_preset(self, name: str, size: tuple[int, int] | None = None) -> dict[str, Any]:
        """
        Check whether a terminal size can hold a preset.

        Raises:
            InvalidPresetError: If the name is unknown
        """
        preset = get_preset(name, self.presets)
        width, height = size or self.terminal_size
        return {
            "preset": name,
            "valid": preset.fits(width, height),
            "required": {"width": preset.min_width, "height": preset.min_height},
            "actual": {"width": width, "height": height},
            "fallback": None if preset.fits(width, height) else self.find_fallback_preset(width, height),
        }

    # -------------------------------------------------------------------------
    # Geometry and focus
    # -------------------------------------------------------------------------

    def calculate_layout(self) -> LayoutGeometry:
        """Geometry for the active preset and size, with focus applied."""
        width, height = self.terminal_size
        key = (self.preset, f"{width}x{height}")
        geometry = self._cache.get(key)
        if geometry is None:
            geometry = compute_geometry(self.current_preset, width, height)
            self._cache[key] = geometry

        if self._focused is not None and geometry.get(self._focused) is not None:
            return geometry.with_focus(self._focused)
        return geometry

    @property
    def focused_pane(self) -> str | None:
        return self.calculate_layout().focused_pane

    def set_focused_pane(self, pane_id: str) -> bool:
        if self.calculate_layout().get(pane_id) is None:
            return False
        self._focused = pane_id
        return True

    def get_next_pane(self) -> str:
        ids = self.calculate_layout().pane_ids
        current = ids.index(self.focused_pane) if self.focused_pane in ids else -1
        return ids[(current + 1) % len(ids)]

    def get_previous_pane(self) -> str:
        ids = self.calculate_layout().pane_ids
        current = ids.index(self.focused_pane) if self.focused_pane in ids else 0
        return ids[(current - 1) % len(ids)]

    def get_layout_info(self) -> dict[str, Any]:
        width, height = self.terminal_size
        return {
            "preset": self.preset,
            "preset_config": self.current_preset.to_dict(),
            "terminal_size": {"width": width, "height": height},
            "layout": self.calculate_layout().to_dict(),
            "focused_pane": self.focused_pane,
            "available_presets": self.get_available_presets(),
        }

    @property
    def cache_size(self) -> int:
        return len(self._cache)
