"""Schema-free discovery of the model / experiment / variable namespace.

Layouts under the base group:

- depth 2: ``<model>/<experiment>/<variable>``
- depth 1: ``<experiment>/<variable>`` (no model level; experiments sit under ``_root``)
- depth 0: ``<variable>`` arrays directly in the base group

Only the first child of each level is probed to decide the depth, and
variables are sampled from a single group; variable sets are assumed uniform
across experiments.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..constants import COORD_NAMES, ROOT_EXPERIMENTS_KEY
from ..errors import DiscoveryFailure, ExplorerError, NodeNotFoundError, ProbeFailure
from ..store import ZarrStore, join_path

logger = logging.getLogger("ensemble_explorer.hierarchy")


@dataclass
class Hierarchy:
    models: List[str] = field(default_factory=list)
    experiments: Dict[str, List[str]] = field(default_factory=dict)
    variables: List[str] = field(default_factory=list)
    depth: int = 0

    def experiments_for(self, model: Optional[str]) -> List[str]:
        if self.depth == 1:
            return list(self.experiments.get(ROOT_EXPERIMENTS_KEY, []))
        return list(self.experiments.get(model or "", []))

    def has_selection(self, model: Optional[str], experiment: Optional[str]) -> bool:
        """True if the model/experiment pair (where set) exists in this hierarchy."""
        if self.depth == 2:
            if model and model not in self.models:
                return False
            if model and experiment and experiment not in self.experiments.get(model, []):
                return False
        elif self.depth == 1 and experiment:
            return experiment in self.experiments.get(ROOT_EXPERIMENTS_KEY, [])
        return True

    def to_dict(self) -> dict:
        return {
            "models": list(self.models),
            "experiments": {k: list(v) for k, v in self.experiments.items()},
            "variables": list(self.variables),
            "depth": self.depth,
        }


def filter_coordinates(names: List[str]) -> List[str]:
    return [n for n in names if n.lower() not in COORD_NAMES]


async def _probe_children(store: ZarrStore, path: str) -> Optional[List[str]]:
    """Children of ``path``, or None when the probe fails (treated as a leaf)."""
    try:
        return await store.list_children(path)
    except Exception as e:
        logger.debug("%s", ProbeFailure(f"list {path!r}: {e}"))
        return None


async def _is_group_with_children(store: ZarrStore, path: str) -> bool:
    children = await _probe_children(store, path)
    return bool(children)


async def _spatial_arrays(store: ZarrStore, group_path: str, names: List[str]) -> List[str]:
    async def _rank(name: str) -> int:
        try:
            info = await store.open_array(join_path(group_path, name))
            return info.ndim
        except Exception as e:
            logger.debug("%s", ProbeFailure(f"open {group_path}/{name}: {e}"))
            return -1

    ranks = await asyncio.gather(*(_rank(n) for n in names))
    return [n for n, r in zip(names, ranks) if r >= 2]


async def discover_hierarchy(store: ZarrStore, base_path: str = "") -> Hierarchy:
    try:
        root_children = await store.list_children(base_path)
    except NodeNotFoundError as e:
        raise DiscoveryFailure(f"Group not found in store: {base_path or '/'}") from e
    except DiscoveryFailure:
        raise
    except (ExplorerError, OSError) as e:
        raise DiscoveryFailure(f"Could not list {base_path or '/'}: {e}") from e

    if not root_children:
        logger.info("Empty base group %r", base_path)
        return Hierarchy(depth=0)

    first_path = join_path(base_path, root_children[0])
    if not await _is_group_with_children(store, first_path):
        variables = filter_coordinates(root_children)
        logger.info("Hierarchy depth 0 under %r: %d variables", base_path, len(variables))
        return Hierarchy(variables=variables, depth=0)

    second_children = await _probe_children(store, first_path) or []
    if not second_children:
        return Hierarchy(depth=1)

    if not await _is_group_with_children(store, join_path(first_path, second_children[0])):
        variables = filter_coordinates(second_children)
        logger.info(
            "Hierarchy depth 1 under %r: %d experiments, %d variables",
            base_path, len(root_children), len(variables),
        )
        return Hierarchy(
            experiments={ROOT_EXPERIMENTS_KEY: list(root_children)},
            variables=variables,
            depth=1,
        )

    models = list(root_children)
    listings = await asyncio.gather(*(_probe_children(store, join_path(base_path, m)) for m in models))
    experiments = {m: list(exps or []) for m, exps in zip(models, listings)}

    variables: List[str] = []
    first_exps = experiments.get(models[0]) or []
    if first_exps:
        sample = join_path(base_path, models[0], first_exps[0])
        candidates = filter_coordinates(await _probe_children(store, sample) or [])
        variables = await _spatial_arrays(store, sample, candidates)

    logger.info(
        "Hierarchy depth 2 under %r: %d models, %d experiments, %d variables",
        base_path, len(models), sum(len(v) for v in experiments.values()), len(variables),
    )
    return Hierarchy(models=models, experiments=experiments, variables=variables, depth=2)


def sample_group_path(hierarchy: Hierarchy, base_path: str = "") -> Optional[str]:
    """Group used for grid and fill-value discovery."""
    if hierarchy.depth == 2:
        if not hierarchy.models:
            return None
        exps = hierarchy.experiments.get(hierarchy.models[0]) or []
        return join_path(base_path, hierarchy.models[0], exps[0]) if exps else None
    if hierarchy.depth == 1:
        exps = hierarchy.experiments.get(ROOT_EXPERIMENTS_KEY) or []
        return join_path(base_path, exps[0]) if exps else None
    return base_path


def panel_group_path(depth: int, base_path: str, model: Optional[str], experiment: Optional[str]) -> str:
    if depth == 2:
        return join_path(base_path, model, experiment)
    if depth == 1:
        return join_path(base_path, experiment or model)
    return base_path


def array_path(depth: int, base_path: str, model: Optional[str], experiment: Optional[str], variable: str) -> str:
    return join_path(panel_group_path(depth, base_path, model, experiment), variable)


def panel_is_loadable(depth: int, model: Optional[str], experiment: Optional[str]) -> bool:
    if depth == 2:
        return bool(model and experiment)
    if depth == 1:
        return bool(experiment or model)
    return True
