"""Per-host firmware gap analysis."""

import re
from typing import Dict, Iterable, List, Optional, Tuple, Union

from firmware_rollout import constants
from firmware_rollout.catalog import FirmwareCatalog
from firmware_rollout.exceptions import DiscoveryError, FirmwareRolloutError, IncompatibleUpdateError
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    CompatibilityRisk, Criticality, ErrorRecord, FirmwareComponent, HostFirmwareGap,
    HostRecord, UpdateStep, utc_now_iso
)


_MAJOR_RE = re.compile(r"\d+")


def normalize_component(component_type: str) -> str:
    """Lower-case a component type and drop separators (``Storage Controller`` -> ``storagecontroller``)."""
    return re.sub(r"[\s\-]", "", component_type.lower())


def component_precedence(component_type: str) -> int:
    """Hardware dependency slot of a component (BIOS first, unknown last)."""
    return constants.COMPONENT_PRECEDENCE.get(
        normalize_component(component_type), constants.UNKNOWN_COMPONENT_PRECEDENCE
    )


def is_boot_critical(component_type: str) -> bool:
    """Whether changing this component can leave the host unbootable."""
    return normalize_component(component_type) in constants.BOOT_CRITICAL_COMPONENTS


def major_version(version: str) -> Optional[int]:
    """Leading number of a version string, or None if it has none."""
    match = _MAJOR_RE.search(version or "")
    return int(match.group()) if match else None


def major_gap(current_version: str, target_version: str) -> int:
    """Number of major versions between current and target (0 if unknown)."""
    current = major_version(current_version)
    target = major_version(target_version)
    if current is None or target is None:
        return 0
    return target - current


def sort_key(component: FirmwareComponent) -> Tuple[int, int, int]:
    """Update ordering: criticality, hardware precedence, catalog order."""
    return (
        Criticality(component.criticality).rank,
        component_precedence(component.component_type),
        component.update_sequence_order,
    )


class GapAnalyzer:
    """Computes what each host needs to reach the catalog target firmware."""

    def __init__(self, catalog: FirmwareCatalog, inventory=None):
        """
        Initialize gap analyzer.

        Args:
            catalog: Firmware catalog
            inventory: Host inventory providing ``get_host(host_id)``
        """
        self.catalog = catalog
        self.inventory = inventory
        self.logger = get_logger("firmware_rollout.gap_analyzer")

    def _current_version(self, host: HostRecord, component_type: str) -> Optional[str]:
        versions = host.current_versions
        if component_type in versions:
            return str(versions[component_type])
        wanted = normalize_component(component_type)
        for name, version in versions.items():
            if normalize_component(name) == wanted:
                return str(version)
        return None

    def _analyze_component(self, host: HostRecord, component_type: str,
                           errors: List[ErrorRecord]) -> Optional[FirmwareComponent]:
        target = self.catalog.get_target(host.model, component_type)
        if target is None:
            return None

        current = self._current_version(host, component_type)
        if current is None:
            errors.append(ErrorRecord(
                timestamp=utc_now_iso(),
                phase=component_type,
                message=f"Host does not report a {component_type} version",
            ))
            return None

        if current == target.version:
            return None

        try:
            hops = self.catalog.resolve_path(host.model, component_type, current, target.version)
        except IncompatibleUpdateError as e:
            e.host_id = host.host_id
            log_with_context(
                self.logger, "warning", str(e),
                host_id=host.host_id,
                details={"component_type": component_type},
            )
            errors.append(ErrorRecord(
                timestamp=utc_now_iso(),
                phase=component_type,
                message=f"No update path from {current} to {target.version}",
                details=type(e).__name__,
            ))
            return None

        return FirmwareComponent(
            component_type=component_type,
            current_version=current,
            target_version=target.version,
            criticality=target.criticality,
            requires_reboot=target.requires_reboot,
            intermediate_versions=tuple(to for _, to, _ in hops[:-1]),
            estimated_duration_minutes=sum(d for _, _, d in hops),
            update_sequence_order=target.update_sequence_order,
        )

    def _build_steps(self, host: HostRecord, components: List[FirmwareComponent]) -> List[UpdateStep]:
        steps = []
        for component in components:
            hops = self.catalog.resolve_path(
                host.model, component.component_type,
                component.current_version, component.target_version,
            )
            for from_version, to_version, duration in hops:
                steps.append(UpdateStep(
                    step_number=len(steps) + 1,
                    component_type=component.component_type,
                    from_version=from_version,
                    to_version=to_version,
                    duration_minutes=duration,
                    requires_reboot=component.requires_reboot,
                    validation_required=is_boot_critical(component.component_type),
                    image_uri=self.catalog.image_uri(host.model, component.component_type, to_version),
                ))
        return steps

    @staticmethod
    def assess_risk(components: List[FirmwareComponent]) -> str:
        """
        Classify how risky a host update is.

        Args:
            components: Outdated components of the host

        Returns:
            CompatibilityRisk value
        """
        for component in components:
            if component.intermediate_versions:
                return CompatibilityRisk.HIGH.value
            if (component.criticality == Criticality.CRITICAL.value
                    and major_gap(component.current_version, component.target_version) >= 2):
                return CompatibilityRisk.HIGH.value
        if components:
            return CompatibilityRisk.MEDIUM.value
        return CompatibilityRisk.LOW.value

    def analyze_host(self, host: HostRecord) -> HostFirmwareGap:
        """
        Compute the firmware gap of one host.

        Component-level path errors are recorded in ``analysis_errors`` and
        do not stop the other components from being analysed.

        Args:
            host: Host record with current versions

        Returns:
            HostFirmwareGap
        """
        errors: List[ErrorRecord] = []
        components = []
        observed: Dict[str, str] = {}
        for component_type in self.catalog.components_for(host.model):
            current = self._current_version(host, component_type)
            if current is not None:
                observed[component_type] = current
            component = self._analyze_component(host, component_type, errors)
            if component is not None:
                components.append(component)

        components.sort(key=sort_key)
        steps = self._build_steps(host, components)

        gap = HostFirmwareGap(
            host_id=host.host_id,
            hostname=host.hostname,
            model=host.model,
            service_tag=host.service_tag,
            cluster_name=host.cluster_name,
            compatibility_risk=self.assess_risk(components),
            total_update_time_minutes=sum(s.duration_minutes for s in steps),
            components=components,
            update_sequence=steps,
            requires_multi_step=any(c.intermediate_versions for c in components),
            management_address=host.management_address,
            analysis_errors=errors,
            current_versions=observed,
        )

        self.logger.debug(
            f"Host {host.host_id}: {len(components)} outdated component(s), "
            f"{len(steps)} step(s), risk {gap.compatibility_risk}"
        )
        return gap

    def analyze_hosts(
        self,
        hosts: Iterable[Union[str, HostRecord]],
    ) -> Tuple[List[HostFirmwareGap], Dict[str, str]]:
        """
        Analyse several hosts, isolating per-host failures.

        Args:
            hosts: Host ids (looked up in the inventory) or host records

        Returns:
            Tuple of (gaps, failures keyed by host id)
        """
        gaps = []
        failures: Dict[str, str] = {}

        for item in hosts:
            host_id = item if isinstance(item, str) else item.host_id
            try:
                if isinstance(item, str):
                    if self.inventory is None:
                        raise DiscoveryError(item, "no host inventory configured")
                    host = self.inventory.get_host(item)
                else:
                    host = item
                gaps.append(self.analyze_host(host))
            except FirmwareRolloutError as e:
                log_with_context(
                    self.logger, "error", f"Gap analysis failed for {host_id}: {e}",
                    host_id=host_id,
                )
                failures[host_id] = str(e)

        self.logger.info(f"Analysed {len(gaps)} host(s), {len(failures)} failure(s)")
        return gaps, failures
