"""Grid geometry helpers shared by metadata discovery, rendering and value probing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from .constants import DEFAULT_CELL_SIZE, DEFAULT_GRID_HEIGHT, DEFAULT_GRID_ORIGIN, DEFAULT_GRID_WIDTH


@dataclass(frozen=True)
class GridConfig:
    width: int
    height: int
    cell_size: float
    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @classmethod
    def from_origin(cls, width: int, height: int, cell_size: float, x_min: float = 0.0, y_min: float = 0.0) -> "GridConfig":
        return cls(
            width=int(width),
            height=int(height),
            cell_size=float(cell_size),
            x_min=float(x_min),
            y_min=float(y_min),
            x_max=float(x_min) + int(width) * float(cell_size),
            y_max=float(y_min) + int(height) * float(cell_size),
        )

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "cellSize": self.cell_size,
            "xMin": self.x_min,
            "yMin": self.y_min,
            "xMax": self.x_max,
            "yMax": self.y_max,
        }


# Antarctic polar stereographic (EPSG:3031), 8 km
DEFAULT_GRID = GridConfig.from_origin(
    DEFAULT_GRID_WIDTH, DEFAULT_GRID_HEIGHT, DEFAULT_CELL_SIZE, DEFAULT_GRID_ORIGIN, DEFAULT_GRID_ORIGIN
)


def _finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


def grid_from_coordinates(x, y) -> Optional[GridConfig]:
    """Derive geometry from 1-d ``x``/``y`` coordinate arrays, or None if unusable."""
    x = np.asarray(x, dtype=np.float64).ravel()
    y = np.asarray(y, dtype=np.float64).ravel()
    if len(x) < 2 or len(y) < 2:
        return None
    cell_size = max(abs(float(x[1] - x[0])), abs(float(y[1] - y[0])))
    x_min, y_min = float(x[0]), float(y[0])
    if not _finite(cell_size, x_min, y_min) or cell_size <= 0:
        return None
    return GridConfig.from_origin(len(x), len(y), cell_size, x_min, y_min)


def grid_from_overrides(overrides: Optional[Mapping[str, Any]]) -> Optional[GridConfig]:
    """Grid from explicit ``grid_width``/``grid_height``/``cell_size`` (+ optional origin)."""
    if not overrides:
        return None
    width = overrides.get("grid_width")
    height = overrides.get("grid_height")
    cell_size = overrides.get("cell_size")
    if width is None or height is None or cell_size is None:
        return None
    try:
        width, height, cell_size = int(width), int(height), float(cell_size)
        x_min = float(overrides.get("x_min") or 0.0)
        y_min = float(overrides.get("y_min") or 0.0)
    except (TypeError, ValueError):
        return None
    if width < 1 or height < 1 or not _finite(cell_size, x_min, y_min) or cell_size <= 0:
        return None
    return GridConfig.from_origin(width, height, cell_size, x_min, y_min)


def world_to_grid(grid: GridConfig, x: float, y: float) -> Optional[Tuple[int, int]]:
    """Map a world coordinate to (gx, gy) cell indices; None outside the grid."""
    if not _finite(x, y):
        return None
    gx = int(math.floor((x - grid.x_min) / grid.cell_size))
    gy = int(math.floor((y - grid.y_min) / grid.cell_size))
    if 0 <= gx < grid.width and 0 <= gy < grid.height:
        return gx, gy
    return None


def grid_to_world(grid: GridConfig, gx: int, gy: int) -> Tuple[float, float]:
    """Center of cell (gx, gy) in world units."""
    return (
        grid.x_min + (gx + 0.5) * grid.cell_size,
        grid.y_min + (gy + 0.5) * grid.cell_size,
    )
