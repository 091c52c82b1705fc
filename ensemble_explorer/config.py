"""Initial-state configuration for one viewer (what an embedding page would pass in)."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from .constants import DATA_VIEWS, DEFAULT_GROUP_PATH, DEFAULT_STORE_REF, DEFAULT_STORE_URL
from .errors import InvalidRequest

CONTROL_MODES = ("all", "time", "none")


@dataclass(frozen=True)
class PanelSelection:
    model: Optional[str] = None
    experiment: Optional[str] = None


@dataclass
class EmbedConfig:
    store_url: str = DEFAULT_STORE_URL
    store_ref: str = DEFAULT_STORE_REF
    group_path: Optional[str] = None
    data_view: str = DEFAULT_GROUP_PATH
    panels: List[PanelSelection] = field(default_factory=list)
    model: Optional[str] = None
    experiment: Optional[str] = None
    variable: Optional[str] = None
    time: Optional[int] = None
    default_year: Optional[int] = None
    colormap: Optional[str] = None
    vmin: Optional[float] = None
    vmax: Optional[float] = None
    controls: str = "all"
    show_selectors: bool = False
    show_colorbar: bool = True
    grid_width: Optional[int] = None
    grid_height: Optional[int] = None
    cell_size: Optional[float] = None
    x_min: Optional[float] = None
    y_min: Optional[float] = None
    autoload: bool = False
    instant_load: bool = True

    def __post_init__(self):
        if self.data_view not in DATA_VIEWS:
            raise InvalidRequest(f"data_view must be one of {', '.join(DATA_VIEWS)}")
        if self.controls not in CONTROL_MODES:
            raise InvalidRequest(f"controls must be one of {', '.join(CONTROL_MODES)}")
        self.panels = [p if isinstance(p, PanelSelection) else PanelSelection(**dict(p)) for p in self.panels]

    @property
    def base_path(self) -> str:
        """Group the hierarchy hangs under: explicit group_path wins over data_view."""
        return self.group_path or self.data_view

    def grid_overrides(self) -> Dict[str, Any]:
        return {
            "grid_width": self.grid_width,
            "grid_height": self.grid_height,
            "cell_size": self.cell_size,
            "x_min": self.x_min,
            "y_min": self.y_min,
        }

    def initial_panels(self) -> List[PanelSelection]:
        if self.panels:
            return list(self.panels)
        if self.model or self.experiment:
            return [PanelSelection(self.model, self.experiment)]
        return [PanelSelection()]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EmbedConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidRequest(f"Unknown config option(s): {', '.join(unknown)}")
        panels = data.pop("panels", None) or []
        try:
            panels = [PanelSelection(**dict(p)) for p in panels]
        except TypeError as e:
            raise InvalidRequest(f"Invalid panels entry: {e}") from e
        data = {k: v for k, v in data.items() if v is not None}
        return cls(panels=panels, **data)

    @classmethod
    def from_env(cls) -> "EmbedConfig":
        def _flag(name: str, default: bool) -> bool:
            raw = os.environ.get(name)
            if raw is None or raw == "":
                return default
            return raw.strip().lower() in ("1", "true", "yes", "on")

        return cls(
            store_url=os.environ.get("EXPLORER_STORE_URL", DEFAULT_STORE_URL),
            store_ref=os.environ.get("EXPLORER_STORE_REF", DEFAULT_STORE_REF),
            group_path=os.environ.get("EXPLORER_GROUP_PATH") or None,
            data_view=os.environ.get("EXPLORER_DATA_VIEW", DEFAULT_GROUP_PATH),
            autoload=_flag("EXPLORER_AUTOLOAD", False),
            instant_load=_flag("EXPLORER_INSTANT_LOAD", True),
        )
