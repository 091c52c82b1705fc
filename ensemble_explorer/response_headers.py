"""Shared HTTP response header builders for panel images."""

from __future__ import annotations

from typing import Optional


def _expose(headers: dict, extra: Optional[dict]) -> dict:
    if extra:
        headers.update(extra)
        expose = [x.strip() for x in headers["Access-Control-Expose-Headers"].split(",") if x.strip()]
        for k in extra.keys():
            if k not in expose and k not in ("Cache-Control",):
                expose.append(k)
        headers["Access-Control-Expose-Headers"] = ", ".join(expose)
    return headers


def build_panel_image_headers(
    *,
    panel_id: str,
    generation: int,
    colormap: str,
    time_label: Optional[str] = None,
    extra: Optional[dict] = None,
) -> dict:
    headers = {
        "Cache-Control": "no-store",
        "X-Panel-Id": panel_id,
        "X-Bitmap-Generation": str(generation),
        "X-Colormap": colormap,
        "Access-Control-Expose-Headers": "X-Panel-Id, X-Bitmap-Generation, X-Colormap",
    }
    if time_label is not None:
        headers["X-Time-Label"] = time_label
        headers["Access-Control-Expose-Headers"] += ", X-Time-Label"
    return _expose(headers, extra)
