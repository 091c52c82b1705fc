"""Shared constants for ensemble-explorer.

Keep store conventions, masking heuristics and frequently reused config in one place.
"""

from __future__ import annotations
import os

# Default store location (overridable per viewer via EmbedConfig)
DEFAULT_STORE_URL: str = os.environ.get(
    "EXPLORER_STORE_URL", "https://data.source.coop/englacial/ismip6/icechunk-ais/"
)
DEFAULT_STORE_REF: str = os.environ.get("EXPLORER_STORE_REF", "main")
DEFAULT_GROUP_PATH: str = "combined"
DATA_VIEWS: tuple[str, ...] = ("combined", "state", "flux")

# Snapshot ids are 20 chars of Crockford-style uppercase base32
SNAPSHOT_ID_PATTERN: str = r"^[0-9A-Z]{20}$"

# Synthetic experiments key for depth-1 stores (no model level)
ROOT_EXPERIMENTS_KEY: str = "_root"

# Coordinate/bookkeeping names never offered as data variables (compared lowercased)
COORD_NAMES: frozenset[str] = frozenset({
    "x", "y", "lat", "lon", "latitude", "longitude",
    "time", "t", "bnds", "bounds", "time_bnds", "time_bounds",
    "x_bnds", "y_bnds", "lat_bnds", "lon_bnds",
    "mapping", "crs", "spatial_ref",
})

# Default grid: Antarctic polar stereographic (EPSG:3031), 8 km cells
DEFAULT_GRID_WIDTH: int = 761
DEFAULT_GRID_HEIGHT: int = 761
DEFAULT_CELL_SIZE: float = 8000.0
DEFAULT_GRID_ORIGIN: float = -3040000.0

# Fill masking: magnitude beyond which a value is treated as a corrupt/huge fill,
# and relative tolerance for matching float32 data against float64 fill metadata
FILL_MAGNITUDE_LIMIT: float = 1e10
FILL_RELATIVE_TOLERANCE: float = 1e-6

# Auto color range percentiles and degenerate-range margin
AUTO_RANGE_LOW_PERCENTILE: float = 0.05
AUTO_RANGE_HIGH_PERCENTILE: float = 0.95
DEGENERATE_RANGE_MARGIN: float = 0.1

# Year-literal fallback window for time axes without CF units
YEAR_LITERAL_MIN: float = 1000.0
YEAR_LITERAL_MAX: float = 3000.0

# Shared display defaults
DEFAULT_COLORMAP: str = "viridis"
DEFAULT_VMIN: float = 0.0
DEFAULT_VMAX: float = 4000.0

# Time slider drags are coalesced into one reload
TIME_DEBOUNCE_SECONDS: float = float(os.environ.get("EXPLORER_TIME_DEBOUNCE_SECONDS", "0.1"))

CHUNK_CACHE_MAX_ITEMS: int = int(os.environ.get("EXPLORER_CHUNK_CACHE_MAX_ITEMS", "64"))
HTTP_TIMEOUT_SECONDS: float = float(os.environ.get("EXPLORER_HTTP_TIMEOUT_SECONDS", "30"))
