"""Store access layer.

A store is a Zarr hierarchy (v2 or v3), either a plain zarr store (memory,
local directory, or remote through fsspec) or an icechunk repository whose
branches, tags and snapshots are checked out as read-only sessions.

Node lookup, listing, metadata and chunk decoding are zarr's; the shuffle and
zlib steps of the chunk codec chain come from ``chunk_codecs``. All public
reads are coroutines: the blocking zarr calls run in worker threads so panels
can load concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import aiohttp
import fsspec
import numpy as np
import zarr
from zarr.storage import FsspecStore, LocalStore, MemoryStore

from . import chunk_codecs  # noqa: F401  registers the shuffle/zlib zarr codecs
from .constants import DEFAULT_STORE_REF, HTTP_TIMEOUT_SECONDS, SNAPSHOT_ID_PATTERN
from .errors import DecodeFailure, DiscoveryFailure, ExplorerError, NodeNotFoundError

logger = logging.getLogger("ensemble_explorer.store")

_SNAPSHOT_RE = re.compile(SNAPSHOT_ID_PATTERN)

# Any of these at the store root marks an icechunk repository
ICECHUNK_MARKERS = ("repo", "config.yaml", "refs/branch.main/ref.json")


@dataclass(frozen=True)
class ArrayInfo:
    path: str
    shape: Tuple[int, ...]
    dtype: str
    chunks: Tuple[int, ...]
    attrs: Dict[str, Any] = field(default_factory=dict)
    fill_value: Optional[float] = None

    @property
    def ndim(self) -> int:
        return len(self.shape)


@dataclass(frozen=True)
class GroupInfo:
    path: str
    attrs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreRef:
    name: str
    kind: str  # "snapshot" | "branch" | "tag" | "root"
    snapshot_id: Optional[str]


def is_snapshot_id(ref: str) -> bool:
    return bool(_SNAPSHOT_RE.match(ref or ""))


def normalize_path(path: Optional[str]) -> str:
    return "/".join(p for p in (path or "").split("/") if p)


def join_path(*parts: Optional[str]) -> str:
    return normalize_path("/".join(p for p in parts if p))


def numeric_fill(value: Any) -> Optional[float]:
    """Array fill value as a finite float, or None (no fill, NaN, bool, non-numeric)."""
    if value is None or isinstance(value, (bool, np.bool_)):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _selection_key(selection: Tuple[Any, ...]) -> str:
    parts = []
    for sel in selection:
        if isinstance(sel, slice):
            parts.append(f"{sel.start}:{sel.stop}:{sel.step}")
        else:
            parts.append(str(sel))
    return ",".join(parts)


class ZarrStore:
    """Read-only view of one zarr hierarchy at a resolved ref.

    ``base_store`` is a plain zarr store; ``repository`` an icechunk
    ``Repository``. Exactly one is set. Plain stores only know the default ref.
    """

    def __init__(self, url: str = "", base_store=None, repository=None, chunk_cache=None):
        if base_store is None and repository is None:
            base_store = MemoryStore()
        self.url = url
        self.base_store = base_store
        self.repository = repository
        self.chunk_cache = chunk_cache
        self.ref: Optional[StoreRef] = None
        self._root: Optional[zarr.Group] = None
        self._nodes: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._stats: Dict[str, int] = {"reads": 0}

    # -- refs ----------------------------------------------------------

    def _checkout(self, ref: str):
        """(zarr store, StoreRef) for ``ref``."""
        repo = self.repository
        if repo is None:
            if ref != DEFAULT_STORE_REF:
                raise DiscoveryFailure(f"Ref not found: {ref} ({self.url} is a plain zarr store without refs)")
            return self.base_store, StoreRef(ref, "root", None)

        if is_snapshot_id(ref):
            session, kind = repo.readonly_session(snapshot_id=ref), "snapshot"
        elif ref in repo.list_branches():
            session, kind = repo.readonly_session(branch=ref), "branch"
        elif ref in repo.list_tags():
            session, kind = repo.readonly_session(tag=ref), "tag"
        else:
            raise DiscoveryFailure(f"Ref not found: {ref}")
        return session.store, StoreRef(ref, kind, session.snapshot_id)

    def _resolve_ref(self, ref: Optional[str]) -> StoreRef:
        ref = (ref or DEFAULT_STORE_REF).strip()
        try:
            zstore, resolved = self._checkout(ref)
            root = zarr.open_group(store=zstore, mode="r")
        except DiscoveryFailure:
            raise
        except Exception as e:
            raise DiscoveryFailure(f"No zarr hierarchy at ref {ref!r} ({self.url}): {e}") from e

        with self._lock:
            self.ref = resolved
            self._root = root
            self._nodes = {"": root}
        logger.info("Resolved ref %s -> %s (%s)", ref, resolved.snapshot_id or "<root>", resolved.kind)
        return resolved

    # -- sync reads ----------------------------------------------------

    def _node(self, path: str):
        path = normalize_path(path)
        node = self._nodes.get(path)
        if node is not None:
            return node
        if self._root is None:
            raise DiscoveryFailure(f"Store {self.url} has no resolved ref")
        try:
            node = self._root[path]
        except (KeyError, FileNotFoundError) as e:
            raise NodeNotFoundError(path) from e
        with self._lock:
            self._nodes[path] = node
        return node

    def _array(self, path: str) -> zarr.Array:
        node = self._node(path)
        if not isinstance(node, zarr.Array):
            raise NodeNotFoundError(normalize_path(path))
        return node

    def _list_children(self, path: str) -> List[str]:
        node = self._node(path)
        if isinstance(node, zarr.Array):
            return []
        try:
            members = node.members()
        except ExplorerError:
            raise
        except (OSError, NotImplementedError, ValueError, aiohttp.ClientError) as e:
            raise DiscoveryFailure(
                f"Could not list {normalize_path(path) or '/'} at {self.url} "
                f"(remote stores need consolidated metadata): {e}"
            ) from e
        with self._lock:
            for name, child in members:
                self._nodes.setdefault(join_path(path, name), child)
        return sorted(name for name, _ in members)

    def _open_array(self, path: str) -> ArrayInfo:
        arr = self._array(path)
        return ArrayInfo(
            path=normalize_path(path),
            shape=tuple(arr.shape),
            dtype=arr.dtype.newbyteorder("=").str,
            chunks=tuple(arr.chunks),
            attrs=dict(arr.attrs),
            fill_value=numeric_fill(arr.fill_value),
        )

    def _open_group(self, path: str) -> GroupInfo:
        node = self._node(path)
        if not isinstance(node, zarr.Group):
            raise NodeNotFoundError(normalize_path(path))
        return GroupInfo(path=normalize_path(path), attrs=dict(node.attrs))

    def _decode(self, arr: zarr.Array, selection: Tuple[Any, ...]) -> np.ndarray:
        self._stats["reads"] += 1
        try:
            out = np.asarray(arr[selection])
        except (ExplorerError, IndexError, TypeError):
            raise
        except (ValueError, RuntimeError) as e:
            raise DecodeFailure(f"Could not decode {arr.path}: {e}") from e
        # cached slices are shared between panels
        out.setflags(write=False)
        return out

    def _read_array(self, path: str, selection: Optional[Sequence[Any]] = None) -> np.ndarray:
        """Decoded values at ``selection``: per-axis int, slice or None (whole axis)."""
        arr = self._array(path)
        if selection is None:
            selection = ()
        elif not isinstance(selection, (tuple, list)):
            selection = (selection,)
        selection = tuple(slice(None) if sel is None else sel for sel in selection)
        if len(selection) > arr.ndim:
            raise IndexError(f"Too many indices for {arr.ndim}-d array {path}")

        if self.chunk_cache is None:
            return self._decode(arr, selection)
        snapshot = (self.ref.snapshot_id or self.ref.name) if self.ref else ""
        key = f"{self.url}@{snapshot}|{normalize_path(path)}[{_selection_key(selection)}]"
        return self.chunk_cache.get_or_load(key, lambda: self._decode(arr, selection))

    # -- async API -----------------------------------------------------

    async def resolve_ref(self, ref: Optional[str] = None) -> StoreRef:
        return await asyncio.to_thread(self._resolve_ref, ref)

    async def list_children(self, path: str = "") -> List[str]:
        return await asyncio.to_thread(self._list_children, path)

    async def open_array(self, path: str) -> ArrayInfo:
        return await asyncio.to_thread(self._open_array, path)

    async def open_group(self, path: str) -> GroupInfo:
        return await asyncio.to_thread(self._open_group, path)

    async def read_array(self, path: str, selection: Optional[Sequence[Any]] = None) -> np.ndarray:
        return await asyncio.to_thread(self._read_array, path, selection)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "url": self.url,
            "ref": self.ref.name if self.ref else None,
            "snapshot": self.ref.snapshot_id if self.ref else None,
            "kind": self.ref.kind if self.ref else None,
            "metadata_nodes": len(self._nodes),
            **self._stats,
        }
        if self.chunk_cache is not None:
            stats["chunk_cache"] = self.chunk_cache.get_stats()
        return stats


# -- backends ------------------------------------------------------------


def _storage_options(url: str) -> Dict[str, Any]:
    if url.startswith(("http://", "https://")):
        return {"client_kwargs": {"timeout": aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS)}}
    return {}


def _looks_like_icechunk(url: str) -> bool:
    if "://" not in url:
        return any(os.path.exists(os.path.join(url, *m.split("/"))) for m in ICECHUNK_MARKERS)
    fs, root = fsspec.core.url_to_fs(url, **_storage_options(url))
    root = root.rstrip("/")
    for marker in ICECHUNK_MARKERS:
        try:
            if fs.exists(f"{root}/{marker}"):
                return True
        except (OSError, aiohttp.ClientError) as e:
            logger.debug("icechunk marker %s at %s: %s", marker, url, e)
    return False


def _icechunk_storage(icechunk, url: str):
    if "://" not in url:
        return icechunk.local_filesystem_storage(url)
    parsed = urlparse(url)
    if parsed.scheme == "s3":
        return icechunk.s3_storage(bucket=parsed.netloc, prefix=parsed.path.strip("/"), from_env=True)
    if parsed.scheme in ("http", "https"):
        # S3-compatible endpoint, path-style: <endpoint>/<bucket>/<prefix>
        bucket, _, prefix = parsed.path.strip("/").partition("/")
        return icechunk.s3_storage(
            bucket=bucket,
            prefix=prefix,
            endpoint_url=f"{parsed.scheme}://{parsed.netloc}",
            allow_http=parsed.scheme == "http",
            force_path_style=True,
            anonymous=True,
        )
    raise DiscoveryFailure(f"Unsupported icechunk URL scheme: {url}")


def open_repository(url: str):
    """Open the icechunk repository at ``url`` (needs the ``icechunk`` extra)."""
    try:
        import icechunk
    except ImportError as e:
        raise DiscoveryFailure(
            f"{url} is an icechunk repository; install ensemble-explorer[icechunk] to open it"
        ) from e
    try:
        return icechunk.Repository.open(_icechunk_storage(icechunk, url))
    except DiscoveryFailure:
        raise
    except Exception as e:
        raise DiscoveryFailure(f"Could not open icechunk repository at {url}: {e}") from e


def build_store(url: str, chunk_cache=None) -> ZarrStore:
    """Pick the backend from the URL scheme and the store layout."""
    if not url:
        raise DiscoveryFailure("No store URL configured")
    if url.startswith("file://"):
        url = url[len("file://"):]
    if "://" not in url and not os.path.isdir(url):
        raise DiscoveryFailure(f"Store directory not found: {url}")

    try:
        icechunk_repo = _looks_like_icechunk(url)
    except (ValueError, ImportError) as e:
        raise DiscoveryFailure(f"Unsupported store URL {url}: {e}") from e
    if icechunk_repo:
        logger.info("Opening icechunk repository %s", url)
        return ZarrStore(url, repository=open_repository(url), chunk_cache=chunk_cache)

    if "://" not in url:
        return ZarrStore(os.path.abspath(url), base_store=LocalStore(url, read_only=True), chunk_cache=chunk_cache)
    try:
        base = FsspecStore.from_url(url, storage_options=_storage_options(url), read_only=True)
    except (ValueError, ImportError, TypeError) as e:
        raise DiscoveryFailure(f"Unsupported store URL {url}: {e}") from e
    return ZarrStore(url, base_store=base, chunk_cache=chunk_cache)


async def open_store(url: str, ref: Optional[str] = None, chunk_cache=None) -> ZarrStore:
    store = await asyncio.to_thread(build_store, url, chunk_cache)
    await store.resolve_ref(ref)
    return store
