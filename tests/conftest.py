"""Shared pytest fixtures: in-memory zarr ensemble stores and the live-server URL."""

from __future__ import annotations

import os

import numpy as np
import pytest
import requests
import zarr
from zarr.storage import MemoryStore

from ensemble_explorer.chunk_codecs import CodecSpec, zarr_compressors
from ensemble_explorer.store import ZarrStore

EXPLORER_BASE = os.environ.get("EXPLORER_BASE", "http://127.0.0.1:8502")
SCRIPTS_DIR = os.path.join(os.path.dirname(__file__), "..", "scripts")

SHUFFLE_ZLIB = [CodecSpec("shuffle", {"elementsize": 4}), CodecSpec("zlib", {"level": 1})]

GRID_H, GRID_W = 3, 4

# model -> experiment -> (first year, number of yearly steps)
ENSEMBLE = {
    "ModelA": {"ctrl": (2000, 51), "hist": (1990, 11)},
    "ModelB": {"ctrl": (2010, 51)},
}


def _reachable(url: str, timeout: float = 3.0) -> bool:
    try:
        r = requests.get(url + "/api/health", timeout=timeout)
        return r.status_code == 200
    except requests.RequestException:
        return False


def panel_value(model: str, year: int) -> float:
    """Cell value written for ``model`` at ``year`` (lets tests see which slice was read)."""
    return float(year) + (1000.0 if model == "ModelB" else 0.0)


def write_group(zstore, path: str = "", attrs=None, zarr_format: int = 3) -> None:
    zarr.create_group(zstore, path=path or None, attributes=dict(attrs or {}), zarr_format=zarr_format)


def write_array(zstore, path, data, chunks=None, codecs=(), fill_value=np.nan, attrs=None, zarr_format=3) -> None:
    """Write ``data`` as a new array; NaN fill unless told otherwise (``None`` means no fill, v2 only)."""
    data = np.asarray(data)
    zarr.create_array(
        zstore,
        name=path,
        data=data,
        chunks=tuple(chunks or data.shape),
        compressors=zarr_compressors(codecs) if codecs else None,
        fill_value=fill_value,
        attributes=dict(attrs or {}),
        zarr_format=zarr_format,
    )


def delete_node(zstore, path: str) -> None:
    group = zarr.open_group(zstore, mode="r+")
    del group[path]


def write_experiment(zstore, group: str, model: str, first_year: int, n_years: int) -> None:
    write_group(zstore, group, {"title": f"{model} run", "institution": "Test Lab", "contact": 42})
    write_array(zstore, f"{group}/x", np.arange(GRID_W) * 8000.0 - 3040000.0)
    write_array(zstore, f"{group}/y", np.arange(GRID_H) * 8000.0 - 3040000.0)
    write_array(
        zstore, f"{group}/time",
        np.arange(n_years, dtype=np.float64) * 365.0,
        attrs={"units": f"days since {first_year}-01-01", "calendar": "365_day"},
    )
    lithk = np.empty((n_years, GRID_H, GRID_W), dtype=np.float32)
    for t in range(n_years):
        lithk[t] = panel_value(model, first_year + t)
    lithk[:, 0, 0] = -9999.0
    write_array(
        zstore, f"{group}/lithk", lithk, chunks=(1, GRID_H, GRID_W), codecs=SHUFFLE_ZLIB,
        fill_value=-9999.0, attrs={"units": "m", "standard_name": "land_ice_thickness", "long_name": "Ice thickness"},
    )
    write_array(
        zstore, f"{group}/orog", np.full((n_years, GRID_H, GRID_W), np.nan, dtype=np.float32),
        chunks=(1, GRID_H, GRID_W), codecs=SHUFFLE_ZLIB,
    )
    # 1-d time series: never offered as a variable
    write_array(zstore, f"{group}/ivol", np.arange(n_years, dtype=np.float32))


def build_ensemble_store(base: str = "combined") -> MemoryStore:
    zstore = MemoryStore()
    write_group(zstore, "", {"title": "test ensemble"})
    write_group(zstore, base)
    for model, experiments in ENSEMBLE.items():
        write_group(zstore, f"{base}/{model}")
        for exp, (first_year, n_years) in experiments.items():
            write_experiment(zstore, f"{base}/{model}/{exp}", model, first_year, n_years)
    return zstore


def explorer_store(zstore, chunk_cache=None) -> ZarrStore:
    return ZarrStore("memory://test", base_store=zstore, chunk_cache=chunk_cache)


def opener_for(zstore):
    """``store_opener`` for ViewerStateMachine that reads a prebuilt zarr store."""
    async def _open(url, ref=None, chunk_cache=None):
        store = ZarrStore(url, base_store=zstore, chunk_cache=chunk_cache)
        await store.resolve_ref(ref)
        return store
    return _open


@pytest.fixture
def ensemble_store():
    return build_ensemble_store()


@pytest.fixture(scope="session")
def explorer_base():
    """URL of a running Ensemble Explorer backend. Skip session if not reachable."""
    if not _reachable(EXPLORER_BASE):
        pytest.skip(f"Explorer server not reachable at {EXPLORER_BASE}: set EXPLORER_BASE or start the server.")
    return EXPLORER_BASE
