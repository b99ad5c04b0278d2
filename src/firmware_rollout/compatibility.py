"""Cluster-level rolling update feasibility."""

import json
import math
from collections import Counter, OrderedDict
from itertools import combinations
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import yaml

from firmware_rollout import constants
from firmware_rollout.exceptions import ConfigurationError, FirmwareRolloutError
from firmware_rollout.gap_analyzer import normalize_component
from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import (
    ClusterCompatibilityAnalysis, CompatibilityWindow, FirmwareVariation, HostFirmwareGap
)


class CompatibilityMatrix:
    """
    Firmware version combinations known to be unsafe when coexisting in a cluster.

    Document form::

        risky:
          BIOS:
            - ["1.0.0", "2.0.0"]
    """

    def __init__(self, risky: Optional[Dict[str, Iterable[Iterable[str]]]] = None):
        self._risky: Dict[str, Set[frozenset]] = {}
        for component_type, pairs in (risky or {}).items():
            bucket = self._risky.setdefault(normalize_component(str(component_type)), set())
            for pair in pairs or []:
                versions = [str(v) for v in pair]
                if len(versions) != 2:
                    raise ConfigurationError(
                        f"Compatibility matrix entry for {component_type} must be a version pair: {pair!r}"
                    )
                bucket.add(frozenset(versions))

    @classmethod
    def load(cls, path: Path) -> "CompatibilityMatrix":
        """
        Load a matrix from a YAML or JSON file; a missing file yields an empty matrix.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path, 'r') as f:
                data = json.load(f) if path.suffix.lower() == ".json" else yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot parse compatibility matrix {path}: {e}") from e
        return cls((data or {}).get("risky", {}))

    def is_risky(self, component_type: str, version_a: str, version_b: str) -> bool:
        """Whether two versions of a component must not coexist (order-insensitive)."""
        if version_a == version_b:
            return False
        bucket = self._risky.get(normalize_component(component_type), set())
        return frozenset((version_a, version_b)) in bucket


def group_by_cluster(gaps: Iterable[HostFirmwareGap]) -> "OrderedDict[str, List[HostFirmwareGap]]":
    """Group clustered gaps by cluster name, in first-seen order; standalone hosts are dropped."""
    grouped: "OrderedDict[str, List[HostFirmwareGap]]" = OrderedDict()
    for gap in gaps:
        if gap.cluster_name:
            grouped.setdefault(gap.cluster_name, []).append(gap)
    return grouped


class ClusterCompatibilityAnalyzer:
    """Determines rolling-update feasibility and safe parallelism per cluster."""

    def __init__(
        self,
        matrix: Optional[CompatibilityMatrix] = None,
        min_active_ratio: float = constants.DEFAULT_MIN_ACTIVE_RATIO,
        min_active_overrides: Optional[Dict[str, int]] = None,
        capacity_provider=None,
    ):
        """
        Initialize analyzer.

        Args:
            matrix: Compatibility matrix (``is_risky`` lookup)
            min_active_ratio: Fraction of a cluster that must stay in service
            min_active_overrides: Per-cluster minimum active host counts
            capacity_provider: Optional virtualization manager providing
                ``get_cluster_capacity(cluster_name)``
        """
        if not 0 <= min_active_ratio <= 1:
            raise ConfigurationError(f"min_active_ratio must be within [0, 1], got {min_active_ratio}")
        self.matrix = matrix or CompatibilityMatrix()
        self.min_active_ratio = min_active_ratio
        self.min_active_overrides = dict(min_active_overrides or {})
        self.capacity_provider = capacity_provider
        self.logger = get_logger("firmware_rollout.compatibility")

    def min_active_hosts(self, cluster_name: str, total_hosts: int) -> int:
        """Hosts of a cluster that must remain active during the update."""
        if cluster_name in self.min_active_overrides:
            return int(self.min_active_overrides[cluster_name])
        return math.ceil(total_hosts * self.min_active_ratio)

    def _cluster_size(self, cluster_name: str, observed: int) -> int:
        if self.capacity_provider is None:
            return observed
        try:
            capacity = self.capacity_provider.get_cluster_capacity(cluster_name)
        except FirmwareRolloutError as e:
            self.logger.warning(f"Cannot read capacity of cluster {cluster_name}: {e}")
            return observed
        return max(observed, capacity.total)

    @staticmethod
    def firmware_variations(gaps: List[HostFirmwareGap]) -> Dict[str, FirmwareVariation]:
        """Distinct installed versions per component with host counts."""
        counters: "OrderedDict[str, Counter]" = OrderedDict()
        for gap in gaps:
            versions = dict(gap.current_versions)
            for component in gap.components:
                versions.setdefault(component.component_type, component.current_version)
            for component_type, version in versions.items():
                counters.setdefault(component_type, Counter())[version] += 1

        return {
            component_type: FirmwareVariation(
                versions=sorted(counter),
                host_count_per_version=dict(sorted(counter.items())),
            )
            for component_type, counter in counters.items()
        }

    def compatibility_windows(self, gaps: List[HostFirmwareGap],
                              variations: Dict[str, FirmwareVariation]) -> List[CompatibilityWindow]:
        """
        Versions of each component that will coexist while the cluster is rolled.

        Every unordered pair of coexisting versions is checked against the
        compatibility matrix.
        """
        coexisting: Dict[str, Set[str]] = {k: set(v.versions) for k, v in variations.items()}
        targets: Dict[str, Set[str]] = {}
        for gap in gaps:
            for component in gap.components:
                bucket = coexisting.setdefault(component.component_type, set())
                bucket.update(component.intermediate_versions)
                bucket.add(component.target_version)
                targets.setdefault(component.component_type, set()).add(component.target_version)

        windows = []
        for component_type, versions in coexisting.items():
            ordered = sorted(versions)
            risky: List[List[str]] = [
                [a, b] for a, b in combinations(ordered, 2)
                if self.matrix.is_risky(component_type, a, b)
            ]
            windows.append(CompatibilityWindow(
                component_type=component_type,
                coexisting_versions=ordered,
                target_versions=sorted(targets.get(component_type, set())),
                risky_combinations=risky,
            ))
        return windows

    def analyze_cluster(self, cluster_name: str, gaps: List[HostFirmwareGap],
                        requested_cap: Optional[int] = None) -> ClusterCompatibilityAnalysis:
        """
        Analyse one cluster.

        Args:
            cluster_name: Cluster name
            gaps: Gaps of the hosts in the cluster
            requested_cap: Operator cap on simultaneous host updates

        Returns:
            ClusterCompatibilityAnalysis
        """
        total_hosts = self._cluster_size(cluster_name, len(gaps))
        min_active = self.min_active_hosts(cluster_name, total_hosts)
        spare = total_hosts - min_active
        cap = requested_cap if requested_cap is not None else total_hosts
        max_simultaneous = max(1, min(spare, cap))

        variations = self.firmware_variations(gaps)
        windows = self.compatibility_windows(gaps, variations)

        warnings = []
        if spare < 1:
            warnings.append(
                f"Cluster {cluster_name} has {total_hosts} host(s) and requires {min_active} "
                f"active; no host can be taken out of service"
            )
        for window in windows:
            for a, b in window.risky_combinations:
                warnings.append(
                    f"{window.component_type} versions {a} and {b} are flagged as risky "
                    f"when coexisting in cluster {cluster_name}"
                )

        total_minutes = sum(g.total_update_time_minutes for g in gaps)
        analysis = ClusterCompatibilityAnalysis(
            cluster_name=cluster_name,
            total_hosts=total_hosts,
            min_active_hosts=min_active,
            max_simultaneous_updates=max_simultaneous,
            estimated_cluster_update_duration_hours=math.ceil(total_minutes / max_simultaneous / 60),
            firmware_variations=variations,
            rolling_update_feasible=spare >= 1 and not any(w.risky_combinations for w in windows),
            compatibility_windows=windows,
            warnings=warnings,
        )

        self.logger.info(
            f"Cluster {cluster_name}: {total_hosts} host(s), min active {min_active}, "
            f"max simultaneous {max_simultaneous}, feasible={analysis.rolling_update_feasible}"
        )
        return analysis

    def analyze(self, gaps: Iterable[HostFirmwareGap],
                requested_cap: Optional[int] = None) -> List[ClusterCompatibilityAnalysis]:
        """
        Analyse every cluster represented in ``gaps``.

        Standalone hosts (no cluster name) are skipped.
        """
        return [
            self.analyze_cluster(name, members, requested_cap)
            for name, members in group_by_cluster(gaps).items()
        ]

    def analyses_by_cluster(self, gaps: Iterable[HostFirmwareGap],
                            requested_cap: Optional[int] = None) -> Dict[str, ClusterCompatibilityAnalysis]:
        """Same as :meth:`analyze`, keyed by cluster name."""
        return {a.cluster_name: a for a in self.analyze(gaps, requested_cap)}
