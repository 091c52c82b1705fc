"""Panel color maps and fast colorization helpers."""

from __future__ import annotations

import io
import math
from functools import lru_cache
from typing import List, Optional

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend
import numpy as np
from PIL import Image

from .color_range import valid_value_mask
from .constants import DEFAULT_COLORMAP

COLORMAP_NAMES = ["viridis", "plasma", "inferno", "magma", "cividis", "turbo", "coolwarm", "RdBu", "gray"]

LUT_SIZE = 256


def resolve_colormap_name(name: Optional[str]) -> str:
    return name if name in COLORMAP_NAMES else DEFAULT_COLORMAP


@lru_cache(maxsize=None)
def colormap_lut(name: Optional[str]) -> np.ndarray:
    """256x4 uint8 lookup table sampled from the matplotlib colormap."""
    cmap = matplotlib.colormaps[resolve_colormap_name(name)]
    lut = np.round(cmap(np.linspace(0.0, 1.0, LUT_SIZE)) * 255.0).astype(np.uint8)
    lut[:, 3] = 255
    lut.setflags(write=False)
    return lut


def data_to_rgba(
    data: np.ndarray,
    vmin: float,
    vmax: float,
    colormap: Optional[str] = None,
    fill_value: Optional[float] = None,
    ignore_value: Optional[float] = None,
) -> np.ndarray:
    """Colorize a 2-d grid; fill/invalid (and ``ignore_value``) pixels are transparent."""
    data = np.asarray(data, dtype=np.float64)
    h, w = data.shape
    rgba = np.zeros((h, w, 4), dtype=np.uint8)

    valid = valid_value_mask(data, fill_value)
    if ignore_value is not None:
        valid &= data != ignore_value
    if not np.any(valid):
        return rgba

    # Guard against NaN bounds (e.g. a cleared input field)
    safe_min = 0.0 if vmin is None or math.isnan(vmin) else float(vmin)
    if vmax is None or math.isnan(vmax):
        safe_max = 1.0 if vmin is None or math.isnan(vmin) else safe_min + 1.0
    else:
        safe_max = float(vmax)

    span = safe_max - safe_min
    if span != 0:
        t = np.clip((data[valid] - safe_min) / span, 0.0, 1.0)
    else:
        t = np.full(int(valid.sum()), 0.5)
    idx = np.round(t * (LUT_SIZE - 1)).astype(np.intp)
    rgba[valid] = colormap_lut(colormap)[idx]
    return rgba


def encode_png(rgba: np.ndarray, flip_y: bool = True) -> bytes:
    """PNG bytes; ``flip_y`` puts grid row 0 (southernmost) at the bottom."""
    if flip_y:
        rgba = np.flipud(rgba)
    img = Image.fromarray(np.ascontiguousarray(rgba))
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


def render_png(
    data: np.ndarray,
    vmin: float,
    vmax: float,
    colormap: Optional[str] = None,
    fill_value: Optional[float] = None,
) -> bytes:
    return encode_png(data_to_rgba(data, vmin, vmax, colormap, fill_value))


def format_value(v: Optional[float]) -> str:
    """Colour-bar / hover text: scientific when tiny or huge, 3 significant digits below 1."""
    if v is None or (isinstance(v, float) and math.isnan(v)):
        return "NaN"
    v = float(v)
    a = abs(v)
    if a == 0:
        return "0"
    if math.isinf(v):
        return "Infinity" if v > 0 else "-Infinity"
    if a < 0.01 or a >= 1e6:
        mantissa, exp = f"{v:.2e}".split("e")
        return f"{mantissa}e{int(exp):+d}"
    if a < 1:
        magnitude = math.floor(math.log10(a))
        decimals = 2 - magnitude
        text = f"{v:.{decimals}f}"
        if abs(float(text)) >= 10 ** (magnitude + 1):
            text = f"{v:.{decimals - 1}f}"
        return text
    return f"{v:.2f}"


def colormap_gradient(name: Optional[str], stops: int = 11) -> str:
    """CSS linear-gradient for a horizontal colour bar."""
    lut = colormap_lut(name)
    parts: List[str] = []
    for i in range(stops):
        pos = i / (stops - 1)
        r, g, b, _ = lut[int(round(pos * (LUT_SIZE - 1)))]
        parts.append(f"rgb({r}, {g}, {b}) {pos * 100:.0f}%")
    return "linear-gradient(to right, " + ", ".join(parts) + ")"
