from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, HTTPException
from fastapi.responses import Response

from ..response_headers import build_panel_image_headers


def build_panels_router(*, get_viewer):
    """Panel lifecycle, selection, loading and raster image endpoints."""
    router = APIRouter()

    @router.post("/api/panels")
    async def api_add_panel():
        viewer = get_viewer()
        viewer.require_store()
        panel = viewer.add_panel()
        if viewer.instant_load and viewer.settings.selected_variable:
            await viewer.load_panel(panel.id)
        return panel.to_dict()

    @router.post("/api/panels/load_all")
    async def api_load_all():
        viewer = get_viewer()
        viewer.require_store()
        await viewer.load_all_panels()
        return viewer.snapshot()

    @router.delete("/api/panels/{panel_id}")
    async def api_remove_panel(panel_id: str):
        viewer = get_viewer()
        removed = viewer.remove_panel(panel_id)
        return {"removed": removed, "activePanelId": viewer.active_panel_id}

    @router.post("/api/panels/{panel_id}/active")
    async def api_set_active(panel_id: str):
        viewer = get_viewer()
        viewer.set_active_panel(panel_id)
        return {"activePanelId": viewer.active_panel_id}

    @router.post("/api/panels/{panel_id}/selection")
    async def api_set_selection(
        panel_id: str,
        model: Optional[str] = Body(None),
        experiment: Optional[str] = Body(None),
    ):
        viewer = get_viewer()
        viewer.require_store()
        panel = await viewer.set_panel_selection(panel_id, model=model, experiment=experiment)
        return panel.to_dict()

    @router.post("/api/panels/{panel_id}/load")
    async def api_load_panel(panel_id: str):
        viewer = get_viewer()
        viewer.require_store()
        await viewer.load_panel(panel_id)
        return viewer.get_panel(panel_id).to_dict()

    @router.get("/api/panels/{panel_id}/image.png")
    async def api_panel_image(panel_id: str):
        viewer = get_viewer()
        panel = viewer.get_panel(panel_id)
        png = await viewer.render_panel(panel_id)
        # A newer render may have superseded ours; serve whatever is current
        png = png or panel.bitmap
        if png is None:
            raise HTTPException(404, f"Panel {panel_id} has no data ({panel.status.value})")
        headers = build_panel_image_headers(
            panel_id=panel_id,
            generation=panel.bitmap_generation,
            colormap=viewer.settings.colormap,
            time_label=panel.resolved_label,
        )
        return Response(content=png, media_type="image/png", headers=headers)

    return router
