"""Turns host gaps and operator policy into a phased orchestration plan."""

import math
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from firmware_rollout import constants
from firmware_rollout.compatibility import ClusterCompatibilityAnalyzer
from firmware_rollout.exceptions import CapacityViolationError
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    ClusterCompatibilityAnalysis, CompatibilityRisk, ExecutionPhase, HostFirmwareGap,
    OrchestrationConfig, OrchestrationPlan, PlanStatus, RiskTolerance, Strategy,
    parse_timestamp, utc_now
)
from firmware_rollout.windows import MaintenanceCalendar


def standalone_cluster_name(gap: HostFirmwareGap) -> str:
    """Pseudo-cluster name of a host that belongs to no cluster."""
    return f"{constants.STANDALONE_CLUSTER_PREFIX}{gap.host_id}"


def worst_risk_rank(hosts: List[HostFirmwareGap]) -> int:
    """Highest compatibility risk rank among ``hosts``."""
    return max((CompatibilityRisk(h.compatibility_risk).rank for h in hosts), default=0)


def concurrency_groups(phases: List[ExecutionPhase], size: int) -> List[List[ExecutionPhase]]:
    """Split phases, in order, into groups that run concurrently."""
    return [phases[i:i + size] for i in range(0, len(phases), size)]


def total_duration_hours(phases: List[ExecutionPhase], max_parallel_clusters: int) -> int:
    """
    Wall-clock estimate of a plan.

    Phases run in concurrency groups of ``max_parallel_clusters``; each group
    lasts as long as its slowest phase.
    """
    return sum(
        max(p.estimated_duration_hours for p in group)
        for group in concurrency_groups(phases, max_parallel_clusters)
    )


class OrchestrationPlanner:
    """Builds OrchestrationPlans."""

    def __init__(
        self,
        compatibility_analyzer: Optional[ClusterCompatibilityAnalyzer] = None,
        calendar: Optional[MaintenanceCalendar] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize planner.

        Args:
            compatibility_analyzer: Analyzer used when no analyses are supplied
            calendar: Maintenance windows per cluster
            clock: Source of the current time
        """
        self.compatibility_analyzer = compatibility_analyzer or ClusterCompatibilityAnalyzer()
        self.calendar = calendar or MaintenanceCalendar()
        self.clock = clock
        self.logger = get_logger("firmware_rollout.planner")

    def _build_phase(self, name: str, hosts: List[HostFirmwareGap], config: OrchestrationConfig,
                     analysis: Optional[ClusterCompatibilityAnalysis]) -> ExecutionPhase:
        warnings: List[str] = []
        minutes = sum(h.total_update_time_minutes for h in hosts)

        if analysis is None:
            return ExecutionPhase(
                phase_number=0,
                cluster_name=name,
                hosts=hosts,
                estimated_duration_hours=math.ceil(minutes / 60),
                parallel_execution=False,
                hosts_per_batch=1,
                min_active_hosts=0,
                total_hosts=1,
                standalone=True,
            )

        hosts_per_batch = min(config.max_parallel_hosts_per_cluster, analysis.max_simultaneous_updates)
        warnings.extend(analysis.warnings)

        if config.compatibility_validation and not analysis.rolling_update_feasible:
            if config.risk_tolerance == RiskTolerance.CONSERVATIVE.value:
                reason = "rolling update is not feasible under conservative risk tolerance"
                if analysis.has_risky_combinations:
                    reason += " (risky firmware versions would coexist)"
                raise CapacityViolationError(
                    name, analysis.total_hosts, 1, analysis.min_active_hosts, reason,
                )
            if hosts_per_batch > 1:
                warnings.append(
                    f"Cluster {name} is not safe for parallel updates; hosts will be updated one at a time"
                )
            hosts_per_batch = 1

        return ExecutionPhase(
            phase_number=0,
            cluster_name=name,
            hosts=hosts,
            estimated_duration_hours=math.ceil(minutes / hosts_per_batch / 60),
            parallel_execution=hosts_per_batch > 1,
            hosts_per_batch=hosts_per_batch,
            min_active_hosts=analysis.min_active_hosts,
            total_hosts=analysis.total_hosts,
            standalone=False,
            warnings=warnings,
        )

    def _order_phases(self, phases: List[ExecutionPhase], strategy: str) -> List[ExecutionPhase]:
        if strategy == Strategy.SMART_ROLLING.value:
            # sorted() is stable, so ties keep submission order
            phases = sorted(
                phases,
                key=lambda p: (worst_risk_rank(p.hosts), p.estimated_duration_hours),
            )
        for number, phase in enumerate(phases, start=1):
            phase.phase_number = number
        return phases

    def _schedule(self, phases: List[ExecutionPhase], config: OrchestrationConfig) -> None:
        """Assign start times, deferring phases into their maintenance windows."""
        if config.scheduled_start:
            cursor = parse_timestamp(config.scheduled_start)
        else:
            cursor = self.clock()

        for group in concurrency_groups(phases, config.max_parallel_clusters):
            group_end = cursor
            for phase in group:
                start = cursor
                if config.respects_windows:
                    start = self.calendar.earliest_start(phase.cluster_name, cursor)
                    phase.deferred_to_window = start != cursor
                phase.scheduled_start = start.isoformat()
                group_end = max(group_end, start + timedelta(hours=phase.estimated_duration_hours))
            cursor = group_end

    @staticmethod
    def rollback_plan(hosts: List[HostFirmwareGap]) -> List[Dict[str, str]]:
        """Versions to restore per host component if the update has to be reverted."""
        return [
            {
                "host_id": gap.host_id,
                "component_type": component.component_type,
                "restore_version": component.current_version,
                "target_version": component.target_version,
            }
            for gap in hosts
            for component in gap.components
        ]

    def plan(
        self,
        gaps: List[HostFirmwareGap],
        config: OrchestrationConfig,
        analyses: Optional[Dict[str, ClusterCompatibilityAnalysis]] = None,
    ) -> OrchestrationPlan:
        """
        Build an orchestration plan.

        Args:
            gaps: Selected host gaps, in submission order
            config: Operator policy
            analyses: Cluster analyses keyed by cluster name (computed when omitted)

        Returns:
            OrchestrationPlan in ``pending_approval`` or ``approved`` status

        Raises:
            ConfigurationError: If the policy is invalid
            CapacityViolationError: If a conservative plan targets an infeasible cluster
            MaintenanceWindowViolationError: If a cluster's window never opens again
        """
        config.validate()

        selected = [g for g in gaps if g.needs_update]
        skipped = len(gaps) - len(selected)
        if skipped:
            self.logger.info(f"Skipping {skipped} host(s) already at target firmware")

        if analyses is None:
            analyses = self.compatibility_analyzer.analyses_by_cluster(
                selected, requested_cap=config.max_parallel_hosts_per_cluster
            )

        groups: "OrderedDict[str, List[HostFirmwareGap]]" = OrderedDict()
        for gap in selected:
            name = gap.cluster_name or standalone_cluster_name(gap)
            groups.setdefault(name, []).append(gap)

        phases = []
        for name, hosts in groups.items():
            analysis = None
            if hosts[0].cluster_name:
                analysis = analyses.get(name)
                if analysis is None:
                    analysis = self.compatibility_analyzer.analyze_cluster(
                        name, hosts, config.max_parallel_hosts_per_cluster
                    )
            phases.append(self._build_phase(name, hosts, config, analysis))

        phases = self._order_phases(phases, config.strategy)
        self._schedule(phases, config)

        require_approval = config.require_manual_approval
        plan = OrchestrationPlan(
            id=f"plan-{uuid.uuid4()}",
            config=config,
            phases=phases,
            total_duration_hours=total_duration_hours(phases, config.max_parallel_clusters),
            status=PlanStatus.PENDING_APPROVAL.value if require_approval else PlanStatus.APPROVED.value,
            rollback_plan=self.rollback_plan(selected),
            warnings=[w for p in phases for w in p.warnings],
        )
        if not require_approval:
            plan.approved_at = plan.created_at

        log_with_context(
            self.logger, "info",
            f"Created plan {plan.id}: {len(phases)} phase(s), {len(selected)} host(s), "
            f"~{plan.total_duration_hours}h, status {plan.status}",
            plan_id=plan.id,
            details={"strategy": config.strategy, "risk_tolerance": config.risk_tolerance},
        )
        return plan
