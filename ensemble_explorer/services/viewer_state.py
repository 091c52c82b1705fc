"""Viewer state machine: owns every panel and the shared settings.

All mutation goes through the methods below. Panel loads are coroutines; the
active panel is always loaded (and awaited) before its siblings so the shared
target year is anchored before other panels resolve against it.

Panel lifecycle::

    EMPTY -> LOADING -> LOADED | OUT_OF_RANGE | ERROR
    (any model/experiment/variable change resets to EMPTY)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from ..color_range import estimate_color_range, is_valid_value, valid_value_mask
from ..config import EmbedConfig
from ..constants import DATA_VIEWS, DEFAULT_COLORMAP, DEFAULT_VMAX, DEFAULT_VMIN, TIME_DEBOUNCE_SECONDS
from ..errors import DiscoveryFailure, InvalidRequest, NodeNotFoundError, NotInitialized, PanelNotFound
from ..grid_utils import DEFAULT_GRID, GridConfig
from ..overlay_render import COLORMAP_NAMES, format_value, render_png
from ..store import ZarrStore, join_path, open_store
from ..time_contract import (
    SliderSpec,
    clamp_index,
    resolve_panel_time_index,
    slider_offset,
    slider_spec,
    target_year_for_slider,
    year_of_index,
)
from .hierarchy import (
    Hierarchy,
    array_path,
    discover_hierarchy,
    panel_group_path,
    panel_is_loadable,
    sample_group_path,
)
from .metadata import (
    GroupMetadata,
    VariableMetadata,
    discover_fill_value,
    discover_grid_config,
    discover_group_metadata,
    discover_time_labels,
    discover_variable_metadata,
)

logger = logging.getLogger("ensemble_explorer.viewer")


class PanelStatus(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"
    OUT_OF_RANGE = "out_of_range"
    ERROR = "error"


@dataclass
class PanelStats:
    min: Optional[float]
    max: Optional[float]
    nan_count: int
    count: int

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "nanCount": self.nan_count, "count": self.count}


def compute_stats(data: np.ndarray) -> PanelStats:
    finite = data[np.isfinite(data)]
    return PanelStats(
        min=float(finite.min()) if finite.size else None,
        max=float(finite.max()) if finite.size else None,
        nan_count=int(np.isnan(data).sum()),
        count=int(data.size),
    )


@dataclass
class Panel:
    id: str
    selected_model: Optional[str] = None
    selected_experiment: Optional[str] = None
    data: Optional[np.ndarray] = None
    data_shape: Optional[Tuple[int, int]] = None
    status: PanelStatus = PanelStatus.EMPTY
    error: Optional[str] = None
    time_labels: Optional[List[str]] = None
    max_time_index: int = 0
    has_time_axis: bool = False
    resolved_time_index: Optional[int] = None
    # slider target not yet loaded; resolved_time_index follows `data`
    pending_time_index: Optional[int] = None
    group_metadata: Optional[GroupMetadata] = None
    all_invalid: bool = False
    stats: Optional[PanelStats] = None
    load_generation: int = 0
    bitmap_generation: int = 0
    bitmap: Optional[bytes] = None
    bitmap_key: Optional[tuple] = None

    def clear(self) -> None:
        """Reset loaded state (keeps the selection); in-flight loads become stale."""
        self.data = None
        self.data_shape = None
        self.status = PanelStatus.EMPTY
        self.error = None
        self.time_labels = None
        self.max_time_index = 0
        self.has_time_axis = False
        self.resolved_time_index = None
        self.pending_time_index = None
        self.group_metadata = None
        self.all_invalid = False
        self.stats = None
        self.load_generation += 1
        self.bitmap = None
        self.bitmap_key = None

    @property
    def resolved_label(self) -> Optional[str]:
        if self.time_labels is None or self.resolved_time_index is None:
            return None
        if 0 <= self.resolved_time_index < len(self.time_labels):
            return self.time_labels[self.resolved_time_index]
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model": self.selected_model,
            "experiment": self.selected_experiment,
            "status": self.status.value,
            "error": self.error,
            "dataShape": list(self.data_shape) if self.data_shape else None,
            "timeLabels": self.time_labels,
            "maxTimeIndex": self.max_time_index,
            "resolvedTimeIndex": self.resolved_time_index,
            "resolvedLabel": self.resolved_label,
            "pendingTimeIndex": self.pending_time_index,
            "groupMetadata": self.group_metadata.to_dict() if self.group_metadata else None,
            "allInvalid": self.all_invalid,
            "stats": self.stats.to_dict() if self.stats else None,
            "bitmapGeneration": self.bitmap_generation,
        }


@dataclass
class ViewerSettings:
    target_year: Optional[int] = None
    time_index: int = 0
    selected_variable: Optional[str] = None
    colormap: str = DEFAULT_COLORMAP
    vmin: float = DEFAULT_VMIN
    vmax: float = DEFAULT_VMAX
    auto_range: bool = True
    fill_value: Optional[float] = None
    variable_metadata: Optional[VariableMetadata] = None
    hover_position: Optional[Tuple[int, int]] = None
    hovered_panel_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "targetYear": self.target_year,
            "timeIndex": self.time_index,
            "variable": self.selected_variable,
            "colormap": self.colormap,
            "vmin": self.vmin,
            "vmax": self.vmax,
            "vminText": format_value(self.vmin),
            "vmaxText": format_value(self.vmax),
            "autoRange": self.auto_range,
            "fillValue": self.fill_value,
            "variableMetadata": self.variable_metadata.to_dict() if self.variable_metadata else None,
            "hover": list(self.hover_position) if self.hover_position else None,
            "hoveredPanelId": self.hovered_panel_id,
        }


StoreOpener = Callable[..., Any]


class ViewerStateMachine:
    def __init__(
        self,
        chunk_cache=None,
        debounce_seconds: Optional[float] = None,
        store_opener: Optional[StoreOpener] = None,
    ):
        self.chunk_cache = chunk_cache
        self.debounce_seconds = TIME_DEBOUNCE_SECONDS if debounce_seconds is None else float(debounce_seconds)
        self._open_store = store_opener or open_store

        self.config: Optional[EmbedConfig] = None
        self.store: Optional[ZarrStore] = None
        self.hierarchy = Hierarchy()
        self.grid: GridConfig = DEFAULT_GRID
        self.data_view: str = DATA_VIEWS[0]
        self.is_initializing = False
        self.init_error: Optional[str] = None

        self._ids = itertools.count(1)
        self.panels: List[Panel] = [self._new_panel()]
        self.active_panel_id: Optional[str] = self.panels[0].id
        self.settings = ViewerSettings()

        self._render_generation: Dict[str, int] = {}
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._pending_reload: Optional[asyncio.Future] = None
        self._reload_task: Optional[asyncio.Task] = None

    # -- lookups -------------------------------------------------------

    def _new_panel(self, model: Optional[str] = None, experiment: Optional[str] = None) -> Panel:
        return Panel(id=f"panel-{next(self._ids)}", selected_model=model, selected_experiment=experiment)

    def get_panel(self, panel_id: str) -> Panel:
        for p in self.panels:
            if p.id == panel_id:
                return p
        raise PanelNotFound(panel_id)

    @property
    def initialized(self) -> bool:
        return self.store is not None

    def require_store(self) -> ZarrStore:
        if self.store is None:
            raise NotInitialized(self.init_error or "Viewer is not initialized")
        return self.store

    @property
    def instant_load(self) -> bool:
        return self.config.instant_load if self.config is not None else True

    def _base_path(self) -> str:
        if self.config is not None and self.config.group_path:
            return self.config.group_path
        return self.data_view

    def _loadable(self, panel: Panel) -> bool:
        return panel_is_loadable(self.hierarchy.depth, panel.selected_model, panel.selected_experiment)

    def slider(self) -> SliderSpec:
        return slider_spec(
            (p.time_labels for p in self.panels),
            (p.max_time_index if p.has_time_axis else None for p in self.panels),
        )

    # -- initialization --------------------------------------------------

    async def _discover(self, store: ZarrStore, base_path: str, overrides: Dict[str, Any]):
        hierarchy = await discover_hierarchy(store, base_path)
        sample = sample_group_path(hierarchy, base_path)
        grid = await discover_grid_config(store, sample, overrides)
        fill = None
        if hierarchy.variables and sample is not None:
            fill = await discover_fill_value(store, join_path(sample, hierarchy.variables[0]))
        return hierarchy, grid, fill

    async def initialize(self, config: Optional[EmbedConfig] = None) -> None:
        """Open the store, discover the hierarchy and set up initial panels.

        A DiscoveryFailure leaves the viewer uninitialized with ``init_error``
        set and is re-raised; nothing is retried.
        """
        config = config or EmbedConfig()
        self.cancel_pending_reload()
        self.is_initializing = True
        self.init_error = None
        self.config = config
        self.data_view = config.data_view
        try:
            store = await self._open_store(config.store_url, config.store_ref, chunk_cache=self.chunk_cache)
            hierarchy, grid, fill = await self._discover(store, config.base_path, config.grid_overrides())
        except Exception as e:
            self.store = None
            self.init_error = str(e) or e.__class__.__name__
            self.is_initializing = False
            logger.error("Failed to initialize viewer: %s", self.init_error)
            if isinstance(e, DiscoveryFailure):
                raise
            raise DiscoveryFailure(self.init_error) from e

        self.store = store
        self.hierarchy = hierarchy
        self.grid = grid

        panels = []
        for sel in config.initial_panels():
            experiment = sel.experiment
            if sel.model and not experiment:
                exps = hierarchy.experiments_for(sel.model)
                experiment = exps[0] if exps else None
            panels.append(self._new_panel(sel.model, experiment))
        self.panels = panels
        self.active_panel_id = panels[0].id
        self._render_generation.clear()

        settings = ViewerSettings(fill_value=fill)
        settings.selected_variable = hierarchy.variables[0] if hierarchy.variables else None
        if config.variable and config.variable in hierarchy.variables:
            settings.selected_variable = config.variable
        elif config.variable:
            logger.warning("Configured variable %r not in store, using %r", config.variable, settings.selected_variable)
        if config.time is not None:
            settings.time_index = max(0, int(config.time))
        if config.default_year is not None:
            settings.target_year = int(config.default_year)
        if config.colormap:
            if config.colormap in COLORMAP_NAMES:
                settings.colormap = config.colormap
            else:
                logger.warning("Unknown colormap %r, using %s", config.colormap, DEFAULT_COLORMAP)
        if config.vmin is not None:
            settings.vmin = float(config.vmin)
            settings.auto_range = False
        if config.vmax is not None:
            settings.vmax = float(config.vmax)
            settings.auto_range = False
        self.settings = settings
        self.is_initializing = False

        logger.info(
            "Viewer initialized: depth=%d models=%d variables=%d panels=%d grid=%dx%d",
            hierarchy.depth, len(hierarchy.models), len(hierarchy.variables),
            len(panels), grid.width, grid.height,
        )

        if config.autoload:
            await self.load_all_panels()

    async def set_data_view(self, view: str) -> None:
        """Rediscover under another top-level group, keeping still-valid panel selections."""
        store = self.require_store()
        if view not in DATA_VIEWS:
            raise InvalidRequest(f"Unknown data view: {view!r}")
        self.cancel_pending_reload()
        self.is_initializing = True
        self.data_view = view
        overrides = self.config.grid_overrides() if self.config else {}
        try:
            hierarchy, grid, fill = await self._discover(store, self._base_path(), overrides)
        except DiscoveryFailure as e:
            self.init_error = str(e)
            self.is_initializing = False
            raise

        kept = [p for p in self.panels if hierarchy.has_selection(p.selected_model, p.selected_experiment)]
        for p in kept:
            p.clear()
        if not kept:
            kept = [self._new_panel()]

        self.hierarchy = hierarchy
        self.grid = grid
        self.panels = kept
        self.active_panel_id = kept[0].id
        s = self.settings
        s.selected_variable = hierarchy.variables[0] if hierarchy.variables else None
        s.fill_value = fill
        s.time_index = 0
        s.target_year = None
        s.variable_metadata = None
        s.hover_position = None
        s.hovered_panel_id = None
        self.is_initializing = False
        logger.info("Switched data view to %s (%d panels kept)", view, len(kept))

    # -- panels ----------------------------------------------------------

    def add_panel(self) -> Panel:
        model = experiment = None
        if self.hierarchy.depth == 2 and self.hierarchy.models:
            model = self.hierarchy.models[0]
            exps = self.hierarchy.experiments_for(model)
            experiment = exps[0] if exps else None
        elif self.hierarchy.depth == 1:
            exps = self.hierarchy.experiments_for(None)
            experiment = exps[0] if exps else None
        panel = self._new_panel(model, experiment)
        self.panels.append(panel)
        self.active_panel_id = panel.id
        return panel

    def remove_panel(self, panel_id: str) -> bool:
        """Remove a panel; the last remaining panel is never removed."""
        panel = self.get_panel(panel_id)
        if len(self.panels) <= 1:
            return False
        panel.clear()
        self.panels = [p for p in self.panels if p.id != panel_id]
        self._render_generation.pop(panel_id, None)
        if self.active_panel_id == panel_id:
            self.active_panel_id = self.panels[0].id
        if self.settings.hovered_panel_id == panel_id:
            self.set_hover(None)
        if self.settings.auto_range:
            self.recompute_color_range()
        return True

    def set_active_panel(self, panel_id: str) -> None:
        self.active_panel_id = self.get_panel(panel_id).id

    async def set_panel_selection(
        self,
        panel_id: str,
        model: Optional[str] = None,
        experiment: Optional[str] = None,
    ) -> Panel:
        """Change a panel's model and/or experiment; clears it and loads when instant_load."""
        panel = self.get_panel(panel_id)
        depth = self.hierarchy.depth
        new_model = panel.selected_model if model is None else model
        new_exp = panel.selected_experiment if experiment is None else experiment

        if depth == 2:
            if model is not None and model not in self.hierarchy.models:
                raise InvalidRequest(f"Unknown model: {model!r}")
            exps = self.hierarchy.experiments_for(new_model)
            if experiment is not None and experiment not in exps:
                raise InvalidRequest(f"Unknown experiment {experiment!r} for model {new_model!r}")
            if new_exp not in exps:
                new_exp = exps[0] if exps else None
        elif depth == 1 and experiment is not None:
            if experiment not in self.hierarchy.experiments_for(None):
                raise InvalidRequest(f"Unknown experiment: {experiment!r}")

        panel.selected_model = new_model
        panel.selected_experiment = new_exp
        panel.clear()
        if self.settings.hovered_panel_id == panel_id and self.settings.hover_position:
            self.set_hover(None)

        if self.instant_load and self._loadable(panel) and self.settings.selected_variable:
            await self.load_panel(panel_id)
        return panel

    async def set_panel_model(self, panel_id: str, model: str) -> Panel:
        return await self.set_panel_selection(panel_id, model=model)

    async def set_panel_experiment(self, panel_id: str, experiment: str) -> Panel:
        return await self.set_panel_selection(panel_id, experiment=experiment)

    # -- shared settings -------------------------------------------------

    async def set_selected_variable(self, variable: str) -> None:
        if variable not in self.hierarchy.variables:
            raise InvalidRequest(f"Unknown variable: {variable!r}")
        if variable == self.settings.selected_variable:
            return
        had_data = any(p.data is not None or p.time_labels for p in self.panels)
        self.settings.selected_variable = variable
        self.settings.variable_metadata = None
        for p in self.panels:
            p.clear()
        if had_data and self.instant_load:
            await self.load_all_panels()

    def _reresolve_panels(self, target_year: Optional[int], index: int) -> None:
        for p in self.panels:
            if p.time_labels:
                p.pending_time_index = resolve_panel_time_index(
                    p.time_labels, p.max_time_index, target_year, index
                )
            elif p.has_time_axis and p.max_time_index > 0:
                p.pending_time_index = clamp_index(index, p.max_time_index)

    def set_time_index(self, index: int) -> None:
        """Move the slider. In year mode ``index`` is an offset from the union minimum year."""
        if index is None or int(index) < 0:
            raise InvalidRequest("Time index must be >= 0")
        index = int(index)
        spec = self.slider()
        self.settings.time_index = index
        if spec.mode == "year":
            self.settings.target_year = target_year_for_slider(index, spec)
        self._reresolve_panels(self.settings.target_year, index)
        self._schedule_reload()

    def set_target_year(self, year: int) -> None:
        year = int(year)
        self.settings.target_year = year
        spec = self.slider()
        if spec.mode == "year":
            self.settings.time_index = slider_offset(year, spec)
        self._reresolve_panels(year, self.settings.time_index)
        self._schedule_reload()

    def set_colormap(self, name: str) -> None:
        if name not in COLORMAP_NAMES:
            raise InvalidRequest(f"Unknown colormap: {name!r}")
        self.settings.colormap = name

    def set_color_range(self, vmin: float, vmax: float) -> None:
        """Manual range; turns auto range off."""
        vmin, vmax = float(vmin), float(vmax)
        if not (math.isfinite(vmin) and math.isfinite(vmax)):
            raise InvalidRequest("vmin/vmax must be finite numbers")
        self.settings.vmin = vmin
        self.settings.vmax = vmax
        self.settings.auto_range = False

    def set_auto_range(self, enabled: bool) -> None:
        self.settings.auto_range = bool(enabled)
        if self.settings.auto_range:
            self.recompute_color_range()

    def recompute_color_range(self) -> None:
        arrays = [p.data for p in self.panels if p.data is not None]
        rng = estimate_color_range(arrays, self.settings.fill_value)
        self.settings.vmin = rng.vmin
        self.settings.vmax = rng.vmax

    # -- hover / probing -----------------------------------------------

    def set_hover(self, position: Optional[Tuple[int, int]], panel_id: Optional[str] = None) -> None:
        if panel_id is not None:
            self.get_panel(panel_id)
        self.settings.hover_position = tuple(position) if position is not None else None
        self.settings.hovered_panel_id = panel_id if position is not None else None

    def value_at(self, panel_id: str, gx: int, gy: int) -> Optional[float]:
        """Displayable value at grid cell (gx, gy), or None for fill/invalid/no data."""
        panel = self.get_panel(panel_id)
        if panel.data is None or panel.data_shape is None:
            return None
        height, width = panel.data_shape
        if not (0 <= gx < width and 0 <= gy < height):
            return None
        value = float(panel.data[gy, gx])
        return value if is_valid_value(value, self.settings.fill_value) else None

    def hover_values(self) -> List[dict]:
        pos = self.settings.hover_position
        out = []
        for p in self.panels:
            value = self.value_at(p.id, pos[0], pos[1]) if pos is not None else None
            out.append({
                "panelId": p.id,
                "model": p.selected_model,
                "experiment": p.selected_experiment,
                "value": value,
                "text": format_value(value) if value is not None else None,
                "timeLabel": p.resolved_label,
            })
        return out

    # -- loading ---------------------------------------------------------

    async def load_all_panels(self) -> None:
        if not self.panels:
            return
        for p in self.panels:
            if self._loadable(p):
                p.status = PanelStatus.LOADING
                p.error = None

        # Active panel first: it anchors target_year for the others
        active_id = self.active_panel_id or self.panels[0].id
        await self.load_panel(active_id)
        rest = [p.id for p in self.panels if p.id != active_id]
        if rest:
            await asyncio.gather(*(self.load_panel(pid) for pid in rest))
        if self.settings.auto_range:
            self.recompute_color_range()

    async def load_panel(self, panel_id: str) -> None:
        panel = self.get_panel(panel_id)
        store = self.store
        variable = self.settings.selected_variable
        if store is None or not variable or not self._loadable(panel):
            if panel.status == PanelStatus.LOADING:
                panel.status = PanelStatus.EMPTY
            return

        panel.load_generation += 1
        generation = panel.load_generation
        panel.status = PanelStatus.LOADING
        panel.error = None

        def _stale() -> bool:
            return panel.load_generation != generation or panel not in self.panels

        depth = self.hierarchy.depth
        base = self._base_path()
        path = array_path(depth, base, panel.selected_model, panel.selected_experiment, variable)
        group = panel_group_path(depth, base, panel.selected_model, panel.selected_experiment)
        logger.info("[%s] Loading %s", panel_id, path)

        try:
            info = await store.open_array(path)
            if info.ndim == 3:
                has_time, max_time, data_shape = True, info.shape[0] - 1, tuple(info.shape[1:])
            elif info.ndim == 2:
                has_time, max_time, data_shape = False, 0, tuple(info.shape)
            else:
                raise InvalidRequest(
                    f'Variable "{variable}" is not a spatial grid (shape: {list(info.shape)}). '
                    "Only 2D and 3D arrays are supported."
                )

            # Labels before data: the time index depends on them
            group_meta = await discover_group_metadata(store, group)
            labels = await discover_time_labels(store, group) if has_time else None
            if _stale():
                return

            resolved = resolve_panel_time_index(
                labels,
                max_time if has_time else None,
                self.settings.target_year,
                self.settings.time_index,
            )
            panel.max_time_index = max_time
            panel.has_time_axis = has_time
            panel.time_labels = labels
            panel.group_metadata = group_meta
            panel.resolved_time_index = resolved
            panel.pending_time_index = None

            if resolved is None:
                logger.info("[%s] Target year %s outside %s", panel_id, self.settings.target_year, path)
                panel.data = None
                panel.data_shape = None
                panel.stats = None
                panel.all_invalid = False
                panel.bitmap = None
                panel.status = PanelStatus.OUT_OF_RANGE
                if self.settings.auto_range:
                    self.recompute_color_range()
                return

            selection = (resolved, None, None) if has_time else (None, None)
            raw = await store.read_array(path, selection)
            fill = await discover_fill_value(store, path)
            var_meta = await discover_variable_metadata(store, path)
            if _stale():
                return

            data = np.asarray(raw, dtype=np.float32)
            stats = compute_stats(data)
            self.settings.fill_value = fill
            self.settings.variable_metadata = var_meta
            panel.data = data
            panel.data_shape = (int(data_shape[0]), int(data_shape[1]))
            panel.stats = stats
            panel.all_invalid = not bool(valid_value_mask(data, fill).any())
            panel.bitmap = None
            panel.bitmap_key = None
            panel.status = PanelStatus.LOADED
            logger.info(
                "[%s] Loaded %d values, min=%s, max=%s, NaN=%d, allInvalid=%s",
                panel_id, stats.count, stats.min, stats.max, stats.nan_count, panel.all_invalid,
            )

            if self.settings.target_year is None and labels:
                year = year_of_index(labels, resolved)
                if year is not None:
                    self.settings.target_year = year
                    self.settings.time_index = slider_offset(year, self.slider())
                    logger.info("[%s] target_year=%s from label %s", panel_id, year, panel.resolved_label)

            if self.settings.auto_range:
                self.recompute_color_range()
        except Exception as e:
            if _stale():
                return
            if isinstance(e, NodeNotFoundError):
                message = (
                    f'Variable "{variable}" not available for '
                    f"{panel.selected_model}/{panel.selected_experiment}"
                )
            else:
                message = str(e) or e.__class__.__name__
            logger.warning("[%s] Failed to load %s: %s", panel_id, path, message)
            panel.data = None
            panel.data_shape = None
            panel.stats = None
            panel.all_invalid = False
            panel.bitmap = None
            panel.error = message
            panel.status = PanelStatus.ERROR
            if self.settings.auto_range:
                self.recompute_color_range()

    # -- debounced reload ------------------------------------------------

    def _schedule_reload(self) -> None:
        if not self.instant_load or self.store is None or not self.settings.selected_variable:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; time change applied without reload")
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        if self._pending_reload is None or self._pending_reload.done():
            self._pending_reload = loop.create_future()
        self._debounce_handle = loop.call_later(self.debounce_seconds, self._fire_reload)

    def _fire_reload(self) -> None:
        self._debounce_handle = None
        done = self._pending_reload
        self._reload_task = asyncio.ensure_future(self.load_all_panels())

        def _finish(task: asyncio.Task) -> None:
            if done is not None and not done.done():
                if task.cancelled():
                    done.cancel()
                elif task.exception() is not None:
                    done.set_exception(task.exception())
                else:
                    done.set_result(None)

        self._reload_task.add_done_callback(_finish)

    @property
    def reload_pending(self) -> bool:
        return self._pending_reload is not None and not self._pending_reload.done()

    async def wait_for_pending_reload(self) -> None:
        """Wait until a debounced reload (if any) has fired and finished."""
        if self._pending_reload is not None:
            await self._pending_reload

    def cancel_pending_reload(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._pending_reload is not None and not self._pending_reload.done():
            self._pending_reload.cancel()
        self._pending_reload = None

    # -- rendering -------------------------------------------------------

    def _bitmap_key(self, panel: Panel) -> tuple:
        s = self.settings
        return (panel.load_generation, s.colormap, s.vmin, s.vmax, s.fill_value)

    async def render_panel(self, panel_id: str) -> Optional[bytes]:
        """PNG for a panel's current raster.

        Each render takes a new generation token; a result that finishes after
        a newer render was issued for the same panel is discarded.
        """
        panel = self.get_panel(panel_id)
        if panel.data is None:
            return None
        key = self._bitmap_key(panel)
        if panel.bitmap is not None and panel.bitmap_key == key:
            return panel.bitmap

        generation = self._render_generation.get(panel_id, 0) + 1
        self._render_generation[panel_id] = generation
        s = self.settings
        png = await asyncio.to_thread(render_png, panel.data, s.vmin, s.vmax, s.colormap, s.fill_value)
        if self._render_generation.get(panel_id) != generation or panel not in self.panels:
            logger.debug("[%s] Discarding stale bitmap generation %d", panel_id, generation)
            return None
        panel.bitmap = png
        panel.bitmap_key = key
        panel.bitmap_generation = generation
        return png

    # -- snapshot --------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "initialized": self.initialized,
            "isInitializing": self.is_initializing,
            "initError": self.init_error,
            "store": self.store.get_stats() if self.store is not None else None,
            "dataView": self.data_view,
            "hierarchy": self.hierarchy.to_dict(),
            "grid": self.grid.to_dict(),
            "activePanelId": self.active_panel_id,
            "panels": [p.to_dict() for p in self.panels],
            "settings": self.settings.to_dict(),
            "slider": self.slider().to_dict(),
        }
