from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Query

from ..config import EmbedConfig
from ..errors import InvalidRequest
from ..grid_utils import grid_to_world, world_to_grid
from ..overlay_render import colormap_gradient


def build_core_router(*, get_viewer, chunk_cache):
    """Viewer-wide endpoints: health, discovery, shared settings and hover."""
    router = APIRouter()

    @router.get("/api/health")
    async def health():
        viewer = get_viewer()
        return {
            "status": "ok",
            "initialized": viewer.initialized,
            "initError": viewer.init_error,
            "cache": len(chunk_cache),
        }

    @router.get("/api/hierarchy")
    async def api_hierarchy():
        viewer = get_viewer()
        viewer.require_store()
        return {
            **viewer.hierarchy.to_dict(),
            "dataView": viewer.data_view,
            "grid": viewer.grid.to_dict(),
        }

    @router.get("/api/state")
    async def api_state():
        return get_viewer().snapshot()

    @router.post("/api/initialize")
    async def api_initialize(payload: Optional[Dict[str, Any]] = Body(None)):
        viewer = get_viewer()
        await viewer.initialize(EmbedConfig.from_dict(payload))
        return viewer.snapshot()

    @router.post("/api/data_view")
    async def api_data_view(view: str = Body(..., embed=True)):
        viewer = get_viewer()
        await viewer.set_data_view(view)
        return viewer.snapshot()

    @router.post("/api/variable")
    async def api_variable(variable: str = Body(..., embed=True)):
        viewer = get_viewer()
        viewer.require_store()
        await viewer.set_selected_variable(variable)
        return viewer.snapshot()

    @router.post("/api/time")
    async def api_time(
        index: Optional[int] = Body(None),
        year: Optional[int] = Body(None),
        wait: bool = Query(False),
    ):
        viewer = get_viewer()
        viewer.require_store()
        if year is not None:
            viewer.set_target_year(year)
        elif index is not None:
            viewer.set_time_index(index)
        if wait:
            await viewer.wait_for_pending_reload()
        return {**viewer.snapshot(), "reloadPending": viewer.reload_pending}

    @router.post("/api/colormap")
    async def api_colormap(colormap: str = Body(..., embed=True)):
        viewer = get_viewer()
        viewer.set_colormap(colormap)
        return {"colormap": colormap, "gradient": colormap_gradient(colormap)}

    @router.post("/api/color_range")
    async def api_color_range(vmin: float = Body(...), vmax: float = Body(...)):
        viewer = get_viewer()
        viewer.set_color_range(vmin, vmax)
        return viewer.settings.to_dict()

    @router.post("/api/auto_range")
    async def api_auto_range(enabled: bool = Body(True, embed=True)):
        viewer = get_viewer()
        viewer.set_auto_range(enabled)
        return viewer.settings.to_dict()

    @router.get("/api/value")
    async def api_value(
        gx: Optional[int] = Query(None),
        gy: Optional[int] = Query(None),
        x: Optional[float] = Query(None),
        y: Optional[float] = Query(None),
        panel_id: Optional[str] = Query(None),
    ):
        """Hover values across panels for a grid cell (or a world coordinate)."""
        viewer = get_viewer()
        if gx is None or gy is None:
            if x is None or y is None:
                raise InvalidRequest("Provide gx/gy or x/y")
            cell = world_to_grid(viewer.grid, x, y)
            viewer.set_hover(cell, panel_id)
            if cell is None:
                return {"gx": None, "gy": None, "values": viewer.hover_values()}
            gx, gy = cell
        else:
            viewer.set_hover((gx, gy), panel_id)
        wx, wy = grid_to_world(viewer.grid, gx, gy)
        return {"gx": gx, "gy": gy, "x": wx, "y": wy, "values": viewer.hover_values()}

    return router
