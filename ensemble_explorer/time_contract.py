"""Shared time-resolution helpers: per-panel index for a target year, slider geometry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .time_codec import YearRange, find_index_for_year, year_from_label, year_range


@dataclass(frozen=True)
class SliderSpec:
    """Slider geometry. ``mode`` is "year" (index = year offset) or "index" (raw steps)."""

    mode: str
    max_index: int
    min_year: Optional[int] = None
    max_year: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "maxIndex": self.max_index,
            "minYear": self.min_year,
            "maxYear": self.max_year,
        }


def clamp_index(index: int, max_time_index: int) -> int:
    return max(0, min(int(index), int(max_time_index)))


def resolve_panel_time_index(
    labels: Optional[Sequence[str]],
    max_time_index: Optional[int],
    target_year: Optional[float],
    slider_index: int = 0,
) -> Optional[int]:
    """Time index a panel should show, or None when it has no data at ``target_year``.

    2-d arrays (``max_time_index`` None) always resolve to 0. With decoded
    labels and a target year the nearest year wins; without labels the raw
    slider position is clamped to the panel's axis.
    """
    if max_time_index is None:
        return 0
    if labels and target_year is not None:
        return find_index_for_year(labels, target_year)
    return clamp_index(slider_index, max_time_index)


def year_of_index(labels: Optional[Sequence[str]], index: Optional[int]) -> Optional[int]:
    if not labels or index is None or not 0 <= index < len(labels):
        return None
    year = year_from_label(labels[index])
    return None if year != year else int(year)


def slider_spec(label_sets: Iterable[Optional[Sequence[str]]], max_time_indexes: Iterable[Optional[int]]) -> SliderSpec:
    """Slider over the union year range, or raw indices when nothing decodes."""
    yr: Optional[YearRange] = year_range(label_sets)
    if yr is not None:
        return SliderSpec("year", yr.max_year - yr.min_year, yr.min_year, yr.max_year)
    steps = [m for m in max_time_indexes if m is not None]
    return SliderSpec("index", max(steps) if steps else 0)


def slider_offset(target_year: Optional[float], spec: SliderSpec) -> int:
    """Slider position for ``target_year`` on a year-mode slider."""
    if spec.mode != "year" or target_year is None or spec.min_year is None:
        return 0
    return clamp_index(int(target_year) - spec.min_year, spec.max_index)


def target_year_for_slider(index: int, spec: SliderSpec) -> Optional[int]:
    if spec.mode != "year" or spec.min_year is None:
        return None
    return spec.min_year + clamp_index(index, spec.max_index)
