"""Best-effort grid / fill-value / descriptive metadata discovery.

Nothing in here raises for missing or unreadable metadata: callers get a
fallback grid, ``None`` fill values and empty metadata records instead.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from ..grid_utils import DEFAULT_GRID, GridConfig, grid_from_coordinates, grid_from_overrides
from ..store import ZarrStore, join_path
from ..time_codec import decode_time_labels

logger = logging.getLogger("ensemble_explorer.metadata")

GROUP_METADATA_FIELDS = ("title", "institution", "source", "contact", "references", "comment")


@dataclass
class VariableMetadata:
    units: Optional[str] = None
    standard_name: Optional[str] = None
    long_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "units": self.units,
            "standardName": self.standard_name,
            "longName": self.long_name,
            "extra": dict(self.extra),
        }


@dataclass
class GroupMetadata:
    title: Optional[str] = None
    institution: Optional[str] = None
    source: Optional[str] = None
    contact: Optional[str] = None
    references: Optional[str] = None
    comment: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_attrs(cls, attrs: Mapping[str, Any]) -> Optional["GroupMetadata"]:
        """Well-known keys matched case-insensitively; other string attrs go to ``extra``."""
        if not attrs:
            return None
        meta = cls()
        for key, value in attrs.items():
            if not isinstance(value, str):
                continue
            lk = key.lower()
            if lk in GROUP_METADATA_FIELDS:
                setattr(meta, lk, value)
            else:
                meta.extra[key] = value
        return meta

    def to_dict(self) -> dict:
        out = {name: getattr(self, name) for name in GROUP_METADATA_FIELDS}
        out["extra"] = dict(self.extra)
        return out


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.number)) and not isinstance(value, bool)


async def discover_grid_config(
    store: ZarrStore,
    sample_group: Optional[str],
    overrides: Optional[Mapping[str, Any]] = None,
) -> GridConfig:
    """Grid from ``x``/``y`` coordinates, else explicit overrides, else the default grid."""
    if sample_group is not None:
        try:
            x = await store.read_array(join_path(sample_group, "x"))
            y = await store.read_array(join_path(sample_group, "y"))
            grid = grid_from_coordinates(x, y)
            if grid is not None:
                logger.info("Grid from coordinate arrays in %s: %s", sample_group, grid)
                return grid
            logger.warning("Invalid coordinate arrays in %s, falling back", sample_group)
        except Exception as e:
            logger.warning("Could not read coordinate arrays in %s: %s", sample_group, e)

    grid = grid_from_overrides(overrides)
    if grid is not None:
        logger.info("Grid from overrides: %s", grid)
        return grid

    logger.info("Using default grid")
    return DEFAULT_GRID


async def discover_fill_value(store: ZarrStore, array_path: str) -> Optional[float]:
    try:
        info = await store.open_array(array_path)
    except Exception as e:
        logger.warning("Could not read fill value for %s: %s", array_path, e)
        return None
    if info.fill_value is not None:
        return info.fill_value
    attr = info.attrs.get("_FillValue")
    if _is_number(attr) and math.isfinite(float(attr)):
        return float(attr)
    return None


async def discover_variable_metadata(store: ZarrStore, array_path: str) -> VariableMetadata:
    try:
        info = await store.open_array(array_path)
    except Exception as e:
        logger.warning("Could not read variable metadata for %s: %s", array_path, e)
        return VariableMetadata()
    attrs = info.attrs

    def _str(key: str) -> Optional[str]:
        value = attrs.get(key)
        return value if isinstance(value, str) else None

    extra = {
        k: v for k, v in attrs.items()
        if k not in ("units", "standard_name", "long_name", "_FillValue", "_ARRAY_DIMENSIONS")
        and (isinstance(v, str) or _is_number(v))
    }
    return VariableMetadata(
        units=_str("units"),
        standard_name=_str("standard_name"),
        long_name=_str("long_name"),
        extra=extra,
    )


async def discover_group_metadata(store: ZarrStore, group_path: str) -> Optional[GroupMetadata]:
    try:
        info = await store.open_group(group_path)
    except Exception as e:
        logger.warning("Could not read group metadata for %s: %s", group_path, e)
        return None
    return GroupMetadata.from_attrs(info.attrs)


async def discover_time_labels(store: ZarrStore, group_path: str) -> Optional[List[str]]:
    path = join_path(group_path, "time")
    try:
        info = await store.open_array(path)
        values = await store.read_array(path)
    except Exception as e:
        logger.warning("Could not read time array %s: %s", path, e)
        return None
    units = info.attrs.get("units")
    calendar = info.attrs.get("calendar")
    return decode_time_labels(
        np.asarray(values, dtype=np.float64).ravel(),
        units if isinstance(units, str) else None,
        calendar if isinstance(calendar, str) else None,
    )
