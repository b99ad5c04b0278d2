"""Firmware catalog and version path resolution."""

import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from firmware_rollout import constants
from firmware_rollout.exceptions import (
    CatalogConfigurationError, ConfigurationError, IncompatibleUpdateError
)
from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import CatalogTarget, Criticality


DEFAULT_MODEL = "*"


class VersionGraph:
    """
    Directed acyclic graph of firmware versions for one model/component.

    Versions live in an arena (``_versions``) and are addressed by integer
    node ids through ``_index``; edges are adjacency lists of
    ``(node_id, duration_minutes)`` kept in declaration order.
    """

    def __init__(self):
        self._versions: List[str] = []
        self._index: Dict[str, int] = {}
        self._edges: List[List[Tuple[int, Optional[int]]]] = []

    def add_version(self, version: str) -> int:
        """Return the node id of ``version``, creating the node if needed."""
        if version not in self._index:
            self._index[version] = len(self._versions)
            self._versions.append(version)
            self._edges.append([])
        return self._index[version]

    def add_edge(self, from_version: str, to_version: str,
                 duration_minutes: Optional[int] = None) -> None:
        """Declare that ``from_version`` can be updated directly to ``to_version``."""
        src = self.add_version(from_version)
        dst = self.add_version(to_version)
        for i, (node, _) in enumerate(self._edges[src]):
            if node == dst:
                if duration_minutes is not None:
                    self._edges[src][i] = (dst, duration_minutes)
                return
        self._edges[src].append((dst, duration_minutes))

    @property
    def has_edges(self) -> bool:
        """Whether any edge was declared."""
        return any(self._edges)

    def __contains__(self, version: str) -> bool:
        return version in self._index

    def edge_duration(self, from_version: str, to_version: str) -> Optional[int]:
        """Declared duration of an edge, or None if the edge has none."""
        src = self._index.get(from_version)
        dst = self._index.get(to_version)
        if src is None or dst is None:
            return None
        for node, duration in self._edges[src]:
            if node == dst:
                return duration
        return None

    def has_edge(self, from_version: str, to_version: str) -> bool:
        """Whether a direct edge exists."""
        src = self._index.get(from_version)
        dst = self._index.get(to_version)
        if src is None or dst is None:
            return False
        return any(node == dst for node, _ in self._edges[src])

    def find_cycle(self) -> Optional[List[str]]:
        """
        Find a cycle in the graph.

        Returns:
            The versions forming a cycle (first version repeated at the end),
            or None if the graph is acyclic
        """
        white, grey, black = 0, 1, 2
        colour = [white] * len(self._versions)

        for root in range(len(self._versions)):
            if colour[root] != white:
                continue
            stack = [(root, iter(self._edges[root]))]
            trail = [root]
            colour[root] = grey
            while stack:
                node, children = stack[-1]
                advanced = False
                for child, _ in children:
                    if colour[child] == grey:
                        cycle = trail[trail.index(child):] + [child]
                        return [self._versions[n] for n in cycle]
                    if colour[child] == white:
                        colour[child] = grey
                        stack.append((child, iter(self._edges[child])))
                        trail.append(child)
                        advanced = True
                        break
                if not advanced:
                    colour[node] = black
                    stack.pop()
                    trail.pop()
        return None

    def shortest_path(self, from_version: str, to_version: str) -> Optional[List[str]]:
        """
        Breadth-first shortest path between two versions.

        Ties are broken by edge declaration order.

        Returns:
            Versions from ``from_version`` to ``to_version`` inclusive, or None
        """
        src = self._index.get(from_version)
        dst = self._index.get(to_version)
        if src is None or dst is None:
            return None

        parents: Dict[int, Optional[int]] = {src: None}
        queue = deque([src])
        while queue:
            node = queue.popleft()
            if node == dst:
                break
            for child, _ in self._edges[node]:
                if child not in parents:
                    parents[child] = node
                    queue.append(child)

        if dst not in parents:
            return None

        path = []
        node = dst
        while node is not None:
            path.append(self._versions[node])
            node = parents[node]
        return list(reversed(path))


@dataclass
class CatalogEntry:
    """Catalog definition of one component for one model."""
    component_type: str
    target_version: str
    criticality: str
    requires_reboot: bool
    estimated_duration_minutes: int
    update_sequence_order: int = 0
    declared_path: List[str] = field(default_factory=list)
    images: Dict[str, str] = field(default_factory=dict)
    graph: VersionGraph = field(default_factory=VersionGraph)

    def to_target(self) -> CatalogTarget:
        """Build the lookup answer for this entry."""
        return CatalogTarget(
            component_type=self.component_type,
            version=self.target_version,
            path=list(self.declared_path) or [self.target_version],
            criticality=self.criticality,
            duration_minutes=self.estimated_duration_minutes,
            requires_reboot=self.requires_reboot,
            update_sequence_order=self.update_sequence_order,
            image_uris=dict(self.images),
        )


def _version(value: Any) -> str:
    """Normalize a version read from YAML (which may have parsed it as a number)."""
    return str(value).strip()


def _parse_entry(model: str, component_type: str, raw: Dict[str, Any],
                 default_duration: int) -> CatalogEntry:
    """Build and validate one catalog entry."""
    if not isinstance(raw, dict) or "target_version" not in raw:
        raise CatalogConfigurationError(model, component_type, "target_version is required")

    criticality = str(raw.get("criticality", Criticality.RECOMMENDED.value)).lower()
    try:
        Criticality(criticality)
    except ValueError:
        raise CatalogConfigurationError(
            model, component_type, f"unknown criticality '{criticality}'"
        ) from None

    entry = CatalogEntry(
        component_type=component_type,
        target_version=_version(raw["target_version"]),
        criticality=criticality,
        requires_reboot=bool(raw.get("requires_reboot", True)),
        estimated_duration_minutes=int(raw.get("estimated_duration_minutes", default_duration)),
        update_sequence_order=int(raw.get("update_sequence_order", 0)),
        declared_path=[_version(v) for v in raw.get("path", []) or []],
        images={_version(k): str(v) for k, v in (raw.get("images", {}) or {}).items()},
    )

    graph = entry.graph
    graph.add_version(entry.target_version)
    for a, b in zip(entry.declared_path, entry.declared_path[1:]):
        graph.add_edge(a, b)

    for edge in raw.get("edges", []) or []:
        try:
            duration = edge.get("duration_minutes")
            graph.add_edge(
                _version(edge["from"]),
                _version(edge["to"]),
                int(duration) if duration is not None else None,
            )
        except (KeyError, TypeError, AttributeError, ValueError):
            raise CatalogConfigurationError(
                model, component_type, f"malformed edge {edge!r}"
            ) from None

    cycle = graph.find_cycle()
    if cycle:
        raise CatalogConfigurationError(
            model, component_type, f"version cycle {' -> '.join(cycle)}"
        )

    return entry


class FirmwareCatalog:
    """Target firmware versions and update paths per server model."""

    def __init__(self, entries: Optional[Dict[str, Dict[str, CatalogEntry]]] = None):
        """
        Initialize catalog.

        Args:
            entries: Mapping of model -> component type -> entry
        """
        self._entries = entries or {}
        self._model_lookup = {m.lower(): m for m in self._entries}

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  default_duration: int = constants.DEFAULT_STEP_DURATION_MINUTES) -> "FirmwareCatalog":
        """
        Build a catalog from its document form.

        Raises:
            CatalogConfigurationError: If an entry is malformed or cyclic
        """
        models = (data or {}).get("models", {}) or {}
        if not isinstance(models, dict):
            raise ConfigurationError("Catalog 'models' must be a mapping")

        entries = {}
        for model, components in models.items():
            model = str(model)
            entries[model] = {
                str(component): _parse_entry(model, str(component), raw, default_duration)
                for component, raw in (components or {}).items()
            }
        return cls(entries)

    @classmethod
    def load(cls, path: Path,
             default_duration: int = constants.DEFAULT_STEP_DURATION_MINUTES) -> "FirmwareCatalog":
        """
        Load a catalog from a YAML or JSON file.

        A missing file yields an empty catalog.

        Raises:
            ConfigurationError: If the file cannot be parsed
            CatalogConfigurationError: If an entry is malformed or cyclic
        """
        logger = get_logger("firmware_rollout.catalog")
        path = Path(path)
        if not path.exists():
            logger.warning(f"Firmware catalog not found at {path}, using an empty catalog")
            return cls()

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot parse firmware catalog {path}: {e}") from e

        catalog = cls.from_dict(data or {}, default_duration)
        logger.info(f"Loaded firmware catalog for {len(catalog.models)} model(s) from {path}")
        return catalog

    @property
    def models(self) -> List[str]:
        """Models with catalog entries."""
        return list(self._entries)

    def _resolve_model(self, model: str) -> Optional[str]:
        if model in self._entries:
            return model
        match = self._model_lookup.get((model or "").lower())
        if match:
            return match
        if DEFAULT_MODEL in self._entries:
            return DEFAULT_MODEL
        return None

    def _entry(self, model: str, component_type: str) -> Optional[CatalogEntry]:
        key = self._resolve_model(model)
        if key is None:
            return None
        components = self._entries[key]
        if component_type in components:
            return components[component_type]
        lowered = component_type.lower()
        for name, entry in components.items():
            if name.lower() == lowered:
                return entry
        return None

    def components_for(self, model: str) -> List[str]:
        """Component types tracked for a model, in catalog declaration order."""
        key = self._resolve_model(model)
        if key is None:
            return []
        return list(self._entries[key])

    def get_target(self, model: str, component_type: str) -> Optional[CatalogTarget]:
        """
        Look up the target firmware of a component.

        Args:
            model: Server model
            component_type: Firmware component type

        Returns:
            CatalogTarget, or None if the model does not track that component
        """
        entry = self._entry(model, component_type)
        return entry.to_target() if entry else None

    def resolve_path(self, model: str, component_type: str,
                     current_version: str, target_version: Optional[str] = None) -> List[Tuple[str, str, int]]:
        """
        Resolve the ordered hops needed to move a component to its target.

        Args:
            model: Server model
            component_type: Firmware component type
            current_version: Installed version
            target_version: Target version (defaults to the catalog target)

        Returns:
            List of ``(from_version, to_version, duration_minutes)`` hops;
            empty when the component is already at target

        Raises:
            IncompatibleUpdateError: If no path exists
        """
        entry = self._entry(model, component_type)
        target = target_version or (entry.target_version if entry else "")
        if entry is None:
            raise IncompatibleUpdateError(component_type, current_version, target)

        if current_version == target:
            return []

        graph = entry.graph
        if not graph.has_edges or graph.has_edge(current_version, target):
            versions = [current_version, target]
        else:
            versions = graph.shortest_path(current_version, target)
            if versions is None:
                raise IncompatibleUpdateError(component_type, current_version, target)

        hops = []
        for a, b in zip(versions, versions[1:]):
            duration = graph.edge_duration(a, b)
            hops.append((a, b, duration if duration is not None else entry.estimated_duration_minutes))
        return hops

    def image_uri(self, model: str, component_type: str, version: str) -> str:
        """Firmware image URI for a version, empty if the catalog has none."""
        entry = self._entry(model, component_type)
        if entry is None:
            return ""
        return entry.images.get(version, "")
