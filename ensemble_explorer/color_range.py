"""Robust display range for noisy, fill-valued float grids."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import numpy as np

from .constants import (
    AUTO_RANGE_HIGH_PERCENTILE,
    AUTO_RANGE_LOW_PERCENTILE,
    DEGENERATE_RANGE_MARGIN,
    FILL_MAGNITUDE_LIMIT,
    FILL_RELATIVE_TOLERANCE,
)

logger = logging.getLogger("ensemble_explorer.color_range")

ArrayLike = Union[np.ndarray, Iterable[float]]


@dataclass(frozen=True)
class ColorRange:
    vmin: float
    vmax: float


def valid_value_mask(values: np.ndarray, fill_value: Optional[float] = None) -> np.ndarray:
    """True where a value is displayable: finite, below the magnitude limit, not the fill."""
    values = np.asarray(values)
    with np.errstate(invalid="ignore"):
        mask = np.isfinite(values) & (np.abs(values) <= FILL_MAGNITUDE_LIMIT)
        if fill_value is not None and math.isfinite(fill_value):
            mask &= ~(np.abs(values - fill_value) < abs(fill_value) * FILL_RELATIVE_TOLERANCE)
    return mask


def is_valid_value(value: Optional[float], fill_value: Optional[float] = None) -> bool:
    if value is None:
        return False
    return bool(valid_value_mask(np.asarray([value], dtype=np.float64), fill_value)[0])


def _as_float_arrays(values) -> list:
    if isinstance(values, np.ndarray):
        return [values.astype(np.float64, copy=False).ravel()]
    items = list(values)
    if items and all(isinstance(v, np.ndarray) for v in items):
        return [v.astype(np.float64, copy=False).ravel() for v in items]
    return [np.asarray(items, dtype=np.float64).ravel()]


def estimate_color_range(values, fill_value: Optional[float] = None) -> ColorRange:
    """5th/95th percentile (by sorted index) over all valid values.

    ``values`` is one array, a flat sequence of numbers, or a sequence of
    arrays (one per loaded panel) whose union is used.
    """
    parts = [a[valid_value_mask(a, fill_value)] for a in _as_float_arrays(values)]
    valid = np.concatenate(parts) if parts else np.empty(0)
    n = valid.size
    if n == 0:
        return ColorRange(0.0, 1.0)

    valid.sort()
    vmin = float(valid[int(math.floor(n * AUTO_RANGE_LOW_PERCENTILE))])
    vmax = float(valid[min(n - 1, int(math.floor(n * AUTO_RANGE_HIGH_PERCENTILE)))])

    if vmin == vmax:
        if vmin == 0:
            return ColorRange(-1.0, 1.0)
        margin = abs(vmin) * DEGENERATE_RANGE_MARGIN
        return ColorRange(vmin - margin, vmin + margin)

    logger.debug("Color range over %d values: %.6g .. %.6g", n, vmin, vmax)
    return ColorRange(vmin, vmax)
