#!/usr/bin/env python3
"""Write a small synthetic ensemble store for local development.

Usage:
  python3 scripts/make_demo_store.py /tmp/demo-store [--grid 96] [--consolidate]

Layout: combined/<model>/<experiment>/{x,y,time,<variables>} with
shuffle+zlib compressed float32 chunks and CF ``days since`` time axes.
"""

from __future__ import annotations

import argparse
import os

import numpy as np
import zarr
from zarr.storage import LocalStore

from ensemble_explorer.chunk_codecs import CodecSpec, zarr_compressors

MODELS = {
    "AWI_PISM1": {"ctrl": (2015, 86), "exp05": (2015, 86)},
    "JPL1_ISSM": {"ctrl": (2015, 86), "hist": (1950, 65)},
}
VARIABLES = ("lithk", "orog", "topg")
CODECS = [CodecSpec("shuffle", {"elementsize": 4}), CodecSpec("zlib", {"level": 1})]


def _field(rng: np.random.Generator, n: int, t: int, offset: float) -> np.ndarray:
    yy, xx = np.mgrid[0:n, 0:n]
    r = np.hypot(xx - n / 2, yy - n / 2) / (n / 2)
    dome = np.clip(1.0 - r ** 2, 0.0, None) * 3000.0 + offset
    trend = np.linspace(0.0, -200.0, t)[:, None, None]
    noise = rng.normal(0.0, 15.0, size=(t, n, n))
    data = (dome[None] + trend * dome[None] / 3000.0 + noise).astype(np.float32)
    data[:, r > 1.0] = np.nan
    return data


def _group(store, path: str, attrs=None) -> None:
    zarr.create_group(store, path=path or None, attributes=attrs or {})


def _array(store, path: str, data: np.ndarray, chunks=None, attrs=None, dimension_names=None) -> None:
    zarr.create_array(
        store,
        name=path,
        data=data,
        chunks=chunks or data.shape,
        compressors=zarr_compressors(CODECS),
        fill_value=np.nan,
        attributes=attrs or {},
        dimension_names=dimension_names,
    )


def build(root: str, grid: int, consolidate: bool) -> None:
    os.makedirs(root, exist_ok=True)
    store = LocalStore(root)
    rng = np.random.default_rng(42)
    cell = 6_080_000.0 / grid
    x = -3_040_000.0 + cell * (np.arange(grid) + 0.5)

    _group(store, "", {"title": "Ensemble explorer demo store"})
    _group(store, "combined")
    for model, experiments in MODELS.items():
        _group(store, f"combined/{model}", {"institution": model.split("_")[0]})
        for exp, (start_year, n_years) in experiments.items():
            group = f"combined/{model}/{exp}"
            _group(store, group, {"title": f"{model} {exp}", "source": "synthetic"})
            _array(store, f"{group}/x", x, attrs={"units": "m"})
            _array(store, f"{group}/y", x, attrs={"units": "m"})
            days = np.array([(start_year - 1850 + i) * 365 + 181 for i in range(n_years)], dtype=np.float64)
            _array(
                store, f"{group}/time", days,
                attrs={"units": "days since 1850-01-01", "calendar": "365_day"},
            )
            for i, var in enumerate(VARIABLES):
                _array(
                    store, f"{group}/{var}",
                    _field(rng, grid, n_years, offset=i * 100.0),
                    chunks=(1, grid, grid),
                    attrs={"units": "m", "standard_name": var, "_ARRAY_DIMENSIONS": ["time", "y", "x"]},
                    dimension_names=("time", "y", "x"),
                )
            print(f"wrote {group} ({n_years} years from {start_year})")
    if consolidate:
        zarr.consolidate_metadata(store)
        print("consolidated metadata")


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("root")
    ap.add_argument("--grid", type=int, default=96)
    ap.add_argument("--consolidate", action="store_true")
    args = ap.parse_args()
    build(args.root, args.grid, args.consolidate)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
