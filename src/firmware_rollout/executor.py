"""Rolling execution of orchestration plans, cluster by cluster and batch by batch."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from firmware_rollout import constants
from firmware_rollout.exceptions import (
    ApprovalRequiredError, CapacityViolationError, ConfigurationError, EvacuationError,
    FirmwareRolloutError, MaintenanceWindowViolationError, RollbackError
)
from firmware_rollout.job_state import JobStateMachine
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    ClusterCapacity, Criticality, ExecutionPhase, HostFailure, HostFirmwareGap, JobStatus,
    OrchestrationPlan, PlanStatus, UpdateJob, utc_now
)
from firmware_rollout.planner import concurrency_groups
from firmware_rollout.protocol_orchestrator import ProtocolOrchestrator
from firmware_rollout.protocols.base import ManagementTarget
from firmware_rollout.windows import MaintenanceCalendar


# Phase outcomes, most severe first
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_PAUSED = "paused"
OUTCOME_COMPLETED = "completed"
OUTCOME_SEVERITY = [OUTCOME_FAILED, OUTCOME_CANCELLED, OUTCOME_PAUSED, OUTCOME_COMPLETED]


class CapacityTracker:
    """
    Active-host counters per cluster.

    Counters only change inside the tracker lock, so two batches of the
    same cluster can never both pass the ``min_active_hosts`` check. Phases
    of concurrent plans that share a cluster share its counter: only the
    first holder seeds it, later holders join the live count.
    """

    def __init__(self):
        """Initialize capacity tracker."""
        self._lock = threading.Lock()
        self._active: Dict[str, int] = {}
        self._minimum: Dict[str, int] = {}
        self._holders: Dict[str, int] = {}

    def seed(self, cluster_name: str, active_hosts: int, min_active_hosts: int) -> bool:
        """
        Register a holder of a cluster's counter.

        Args:
            cluster_name: Cluster name
            active_hosts: Active hosts reported for the cluster
            min_active_hosts: Floor that must stay active

        Returns:
            True if the counter was set from ``active_hosts``, False if it
            is already held and keeps its live value
        """
        with self._lock:
            holders = self._holders.get(cluster_name, 0)
            self._holders[cluster_name] = holders + 1
            if holders:
                self._minimum[cluster_name] = max(self._minimum.get(cluster_name, 0), min_active_hosts)
                return False
            self._active[cluster_name] = active_hosts
            self._minimum[cluster_name] = min_active_hosts
            return True

    def unseed(self, cluster_name: str) -> None:
        """Drop one holder of a cluster's counter."""
        with self._lock:
            holders = self._holders.get(cluster_name, 0)
            if holders <= 1:
                self._holders.pop(cluster_name, None)
            else:
                self._holders[cluster_name] = holders - 1

    def holders(self, cluster_name: str) -> int:
        """Number of running phases sharing the cluster's counter."""
        with self._lock:
            return self._holders.get(cluster_name, 0)

    def active(self, cluster_name: str) -> int:
        """Current active-host count."""
        with self._lock:
            return self._active.get(cluster_name, 0)

    def acquire(self, cluster_name: str, count: int = 1) -> None:
        """
        Take ``count`` hosts out of service.

        Raises:
            CapacityViolationError: If fewer than the floor would remain active
        """
        with self._lock:
            active = self._active.get(cluster_name, 0)
            minimum = self._minimum.get(cluster_name, 0)
            if active - count < minimum:
                raise CapacityViolationError(cluster_name, active, count, minimum)
            self._active[cluster_name] = active - count

    def release(self, cluster_name: str, count: int = 1) -> None:
        """Return ``count`` hosts to service."""
        with self._lock:
            self._active[cluster_name] = self._active.get(cluster_name, 0) + count


class PlanControl:
    """Pause and cancel requests for a running plan, honoured between batches."""

    def __init__(self):
        self.pause_requested = threading.Event()
        self.cancel_requested = threading.Event()

    def interrupted(self) -> Optional[str]:
        """Outcome requested by the operator, if any."""
        if self.cancel_requested.is_set():
            return OUTCOME_CANCELLED
        if self.pause_requested.is_set():
            return OUTCOME_PAUSED
        return None


class ClusterRollingExecutor:
    """
    Drives approved plans to completion.

    Phases run in concurrency groups of ``max_parallel_clusters``; within a
    phase, hosts are updated in batches of ``hosts_per_batch`` after the
    batch has been taken out of service through the virtualization manager.
    Progress is persisted after every batch so an interrupted plan resumes
    with the next unprocessed host.
    """

    def __init__(
        self,
        orchestrator: ProtocolOrchestrator,
        state_machine: Optional[JobStateMachine] = None,
        store=None,
        virtualization_manager=None,
        credential_resolver=None,
        calendar: Optional[MaintenanceCalendar] = None,
        capacity_tracker: Optional[CapacityTracker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize rolling executor.

        Args:
            orchestrator: Runs the update job of each host
            state_machine: Status gate for plans and jobs
            store: StateStore for execution logs
            virtualization_manager: Maintenance mode and capacity provider
                (None when hosts are not virtualization cluster members)
            credential_resolver: Provides ``get_credentials(host_id)``
            calendar: Maintenance windows per cluster
            capacity_tracker: Shared active-host counters
            clock: Source of the current time
        """
        self.orchestrator = orchestrator
        self.state_machine = state_machine or orchestrator.state_machine
        self.store = store
        self.virtualization_manager = virtualization_manager
        self.credential_resolver = credential_resolver
        self.calendar = calendar or MaintenanceCalendar()
        self.capacity = capacity_tracker or CapacityTracker()
        self.clock = clock
        self.logger = get_logger("firmware_rollout.executor")
        self._running: Dict[str, Tuple[OrchestrationPlan, PlanControl]] = {}
        self._running_lock = threading.Lock()

    # Operator controls

    def running_plan(self, plan_id: str) -> Optional[OrchestrationPlan]:
        """Live record of a plan executing in this process."""
        with self._running_lock:
            entry = self._running.get(plan_id)
        return entry[0] if entry else None

    def running_plan_ids(self) -> List[str]:
        """Ids of plans executing in this process."""
        with self._running_lock:
            return list(self._running)

    def request_pause(self, plan_id: str) -> bool:
        """Ask a running plan to pause after its in-flight batches; False if not running here."""
        with self._running_lock:
            entry = self._running.get(plan_id)
        if entry is None:
            return False
        entry[1].pause_requested.set()
        self.logger.info(f"Pause requested for plan {plan_id}")
        return True

    def request_cancel(self, plan_id: str) -> bool:
        """Ask a running plan to stop after its in-flight batches; False if not running here."""
        with self._running_lock:
            entry = self._running.get(plan_id)
        if entry is None:
            return False
        entry[1].cancel_requested.set()
        self.logger.info(f"Cancellation requested for plan {plan_id}")
        return True

    # Plan execution

    def _log(self, plan: OrchestrationPlan, event: str, **fields) -> None:
        if self.store is not None:
            self.store.append_log(plan.id, event, **fields)

    def execute(self, plan: OrchestrationPlan) -> OrchestrationPlan:
        """
        Run (or resume) a plan until it completes, fails, pauses or is cancelled.

        Args:
            plan: Approved, paused or interrupted running plan

        Returns:
            The plan in its resulting status

        Raises:
            ApprovalRequiredError: If the plan still awaits approval
        """
        if plan.is_terminal:
            self.logger.info(f"Plan {plan.id} is already {plan.status}")
            return plan
        if plan.status == PlanStatus.PENDING_APPROVAL.value:
            raise ApprovalRequiredError(plan.id)

        control = PlanControl()
        with self._running_lock:
            if plan.id in self._running:
                return self._running[plan.id][0]
            self._running[plan.id] = (plan, control)

        try:
            with self.state_machine.lock:
                if plan.status == PlanStatus.APPROVED.value:
                    self.state_machine.transition_plan(plan, PlanStatus.RUNNING.value, "execution started")
                else:
                    plan.retry_count += 1
                    if plan.status == PlanStatus.PAUSED.value:
                        self.state_machine.transition_plan(
                            plan, PlanStatus.RUNNING.value, f"resumed (attempt {plan.retry_count})"
                        )
                    else:
                        self.logger.info(f"Recovering interrupted plan {plan.id}")
                        self.state_machine.touch_plan(plan)

            outcome, reason = self._run_phases(plan, control)
            self._finish(plan, outcome, reason)
            return plan
        finally:
            with self._running_lock:
                self._running.pop(plan.id, None)

    def _run_phases(self, plan: OrchestrationPlan, control: PlanControl) -> Tuple[str, str]:
        remaining = [
            phase for phase in plan.phases
            if plan.progress_for(phase.phase_number).status != constants.PHASE_STATUS_COMPLETED
        ]
        for group in concurrency_groups(remaining, plan.config.max_parallel_clusters):
            interrupted = control.interrupted()
            if interrupted:
                return interrupted, ""

            with self.state_machine.lock:
                plan.current_phase = group[0].phase_number
                self.state_machine.touch_plan(plan)

            if len(group) == 1:
                results = [self.run_phase(plan, group[0], control)]
            else:
                with ThreadPoolExecutor(max_workers=len(group), thread_name_prefix="phase") as pool:
                    results = list(pool.map(lambda p: self.run_phase(plan, p, control), group))

            outcome, reason = min(results, key=lambda r: OUTCOME_SEVERITY.index(r[0]))
            if outcome != OUTCOME_COMPLETED:
                return outcome, reason
        return OUTCOME_COMPLETED, ""

    def _finish(self, plan: OrchestrationPlan, outcome: str, reason: str) -> None:
        with self.state_machine.lock:
            if outcome == OUTCOME_FAILED:
                if not plan.failure_reason:
                    plan.failure_reason = reason
                self.state_machine.transition_plan(plan, PlanStatus.FAILED.value, reason)
            elif outcome == OUTCOME_CANCELLED:
                self.state_machine.transition_plan(plan, PlanStatus.CANCELLED.value, "cancelled by operator")
            elif outcome == OUTCOME_PAUSED:
                self.state_machine.transition_plan(plan, PlanStatus.PAUSED.value, reason or "paused by operator")
            else:
                summary = f"{len(plan.failures)} host failure(s)" if plan.failures else ""
                self.state_machine.transition_plan(plan, PlanStatus.COMPLETED.value, summary)

        log_with_context(
            self.logger, "info" if outcome == OUTCOME_COMPLETED else "warning",
            f"Plan {plan.id} finished as {plan.status}" + (f": {reason}" if reason else ""),
            plan_id=plan.id,
            details={"failures": len(plan.failures), "alerts": len(plan.alerts)},
        )

    # Phase execution

    def _set_phase_status(self, plan: OrchestrationPlan, phase: ExecutionPhase, status: str) -> None:
        with self.state_machine.lock:
            plan.progress_for(phase.phase_number).status = status
            self.state_machine.touch_plan(plan)
        self._log(plan, "phase_status", phase_number=phase.phase_number,
                  cluster_name=phase.cluster_name, status=status)

    def _seed_capacity(self, phase: ExecutionPhase) -> ClusterCapacity:
        total = max(phase.total_hosts, len(phase.hosts))
        capacity = ClusterCapacity(active=total, total=total)
        if self.virtualization_manager is not None:
            try:
                capacity = self.virtualization_manager.get_cluster_capacity(phase.cluster_name)
            except FirmwareRolloutError as e:
                self.logger.warning(
                    f"Cannot read capacity of cluster {phase.cluster_name}, assuming all "
                    f"{total} hosts active: {e}"
                )
        if not self.capacity.seed(phase.cluster_name, capacity.active, phase.min_active_hosts):
            self.logger.debug(
                f"Cluster {phase.cluster_name} is already being updated; keeping its live count of "
                f"{self.capacity.active(phase.cluster_name)} active host(s)"
            )
        return capacity

    def run_phase(self, plan: OrchestrationPlan, phase: ExecutionPhase,
                  control: Optional[PlanControl] = None) -> Tuple[str, str]:
        """
        Run the remaining batches of one phase.

        Returns:
            Tuple of (outcome, reason)
        """
        control = control or PlanControl()
        progress = plan.progress_for(phase.phase_number)
        if progress.status == constants.PHASE_STATUS_COMPLETED:
            return OUTCOME_COMPLETED, ""

        label = f"Phase {phase.phase_number} ({phase.cluster_name})"
        if plan.config.respects_windows and not self.calendar.is_open(phase.cluster_name, self.clock()):
            error = MaintenanceWindowViolationError(phase.cluster_name, "maintenance window is closed")
            self.logger.warning(f"{label}: {error}")
            self._set_phase_status(plan, phase, constants.PHASE_STATUS_PAUSED)
            return OUTCOME_PAUSED, str(error)

        self._set_phase_status(plan, phase, constants.PHASE_STATUS_RUNNING)
        drs_enabled = True
        if not phase.standalone:
            drs_enabled = self._seed_capacity(phase).drs_enabled
        try:
            return self._run_batches(plan, phase, control, label, drs_enabled)
        finally:
            if not phase.standalone:
                self.capacity.unseed(phase.cluster_name)

    def _run_batches(self, plan: OrchestrationPlan, phase: ExecutionPhase, control: PlanControl,
                     label: str, drs_enabled: bool) -> Tuple[str, str]:
        progress = plan.progress_for(phase.phase_number)
        batch_size = max(1, phase.hosts_per_batch)
        start = progress.last_completed_host_index + 1
        for offset in range(start, len(phase.hosts), batch_size):
            interrupted = control.interrupted()
            if interrupted:
                self._set_phase_status(plan, phase, interrupted)
                return interrupted, ""

            batch = phase.hosts[offset:offset + batch_size]
            if not phase.standalone:
                try:
                    self.capacity.acquire(phase.cluster_name, len(batch))
                except CapacityViolationError as e:
                    log_with_context(self.logger, "error", f"{label}: {e}", plan_id=plan.id,
                                     phase=phase.cluster_name)
                    with self.state_machine.lock:
                        plan.alerts.append(f"{label}: {e}")
                    self._set_phase_status(plan, phase, constants.PHASE_STATUS_PAUSED)
                    return OUTCOME_PAUSED, str(e)

            self.logger.info(
                f"{label}: updating hosts {offset + 1}-{offset + len(batch)} of {len(phase.hosts)}"
            )
            if len(batch) == 1:
                results = [self._update_host(plan, phase, batch[0], drs_enabled)]
            else:
                with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="host") as pool:
                    results = list(pool.map(
                        lambda gap: self._update_host(plan, phase, gap, drs_enabled), batch
                    ))

            failures = [failure for failure, _ in results if failure is not None]
            must_halt = any(halt for _, halt in results)
            with self.state_machine.lock:
                for failure in failures:
                    self._record_failure(plan, failure)
                progress.last_completed_host_index = offset + len(batch) - 1
                self.state_machine.touch_plan(plan)

            if failures and (must_halt or plan.config.halts_on_failure):
                reason = f"{label}: host {failures[0].host_id} failed: {failures[0].reason}"
                self._set_phase_status(plan, phase, constants.PHASE_STATUS_FAILED)
                return OUTCOME_FAILED, reason

        self._set_phase_status(plan, phase, constants.PHASE_STATUS_COMPLETED)
        return OUTCOME_COMPLETED, ""

    def _record_failure(self, plan: OrchestrationPlan, failure: HostFailure) -> None:
        plan.failures.append(failure)
        plan.progress_for(failure.phase_number).failed_hosts.append(failure.host_id)
        self._log(plan, "host_failure", **failure.to_dict())
        if failure.critical:
            alert = (
                f"Critical firmware update failed on {failure.host_id} "
                f"({failure.component_type}): {failure.reason}"
            )
            plan.alerts.append(alert)
            log_with_context(self.logger, "critical", alert, host_id=failure.host_id,
                             plan_id=plan.id, phase=str(failure.phase_number))

    # Host execution

    def _target(self, gap: HostFirmwareGap) -> ManagementTarget:
        if self.credential_resolver is None:
            raise ConfigurationError("no credential resolver configured")
        if not gap.management_address:
            raise ConfigurationError(f"host {gap.host_id} has no management address")
        return ManagementTarget(
            host_id=gap.host_id,
            address=gap.management_address,
            credentials=self.credential_resolver.get_credentials(gap.host_id),
        )

    @staticmethod
    def _is_critical(gap: HostFirmwareGap, component_type: str) -> bool:
        return any(
            c.component_type == component_type and c.criticality == Criticality.CRITICAL.value
            for c in gap.components
        )

    def _failure(self, phase: ExecutionPhase, gap: HostFirmwareGap, reason: str,
                 component_type: str = "") -> HostFailure:
        component_type = component_type or (
            gap.update_sequence[0].component_type if gap.update_sequence else ""
        )
        return HostFailure(
            host_id=gap.host_id,
            phase_number=phase.phase_number,
            reason=reason,
            component_type=component_type,
            critical=self._is_critical(gap, component_type),
        )

    def _abandon_job(self, job: UpdateJob, reason: str) -> None:
        with self.state_machine.lock:
            if not job.is_terminal:
                self.state_machine.transition_job(job, JobStatus.FAILED.value, reason)

    def _update_host(self, plan: OrchestrationPlan, phase: ExecutionPhase, gap: HostFirmwareGap,
                     drs_enabled: bool) -> Tuple[Optional[HostFailure], bool]:
        """
        Update one host inside maintenance mode.

        Returns:
            Tuple of (failure or None, whether the plan must halt regardless of policy)
        """
        job = self.orchestrator.create_job(gap.host_id, gap.update_sequence, plan.id)
        with self.state_machine.lock:
            plan.job_ids[gap.host_id] = job.id
            self.state_machine.touch_plan(plan)

        host_name = gap.hostname or gap.host_id
        manage_maintenance = not phase.standalone and self.virtualization_manager is not None
        in_maintenance = False
        try:
            target = self._target(gap)
            if manage_maintenance:
                if not drs_enabled and self.virtualization_manager.has_running_vms(host_name):
                    raise EvacuationError(host_name, "DRS is disabled and VMs are still running on the host")
                self.virtualization_manager.enter_maintenance_mode(host_name)
                in_maintenance = True
                self._log(plan, "maintenance_enter", host_id=gap.host_id)
        except FirmwareRolloutError as e:
            if not phase.standalone:
                self.capacity.release(phase.cluster_name)
            self._abandon_job(job, str(e))
            return self._failure(phase, gap, str(e)), False

        rollback_error: Optional[RollbackError] = None
        try:
            job = self.orchestrator.run_job(
                job, target, gap.update_sequence,
                preferred_protocol=plan.config.preferred_protocol,
                enable_fallback=plan.config.enable_fallback,
                health_gate=plan.config.hardware_health_gate,
            )
        except FirmwareRolloutError as e:
            self.logger.error(f"Update job {job.id} for {gap.host_id} aborted: {e}", exc_info=True)
            self._abandon_job(job, str(e))
        finally:
            if in_maintenance:
                rollback_error = self._exit_maintenance(plan, gap, host_name)
            if not phase.standalone and rollback_error is None:
                self.capacity.release(phase.cluster_name)

        if rollback_error is not None:
            return self._failure(phase, gap, str(rollback_error), job.component_type), True
        if job.status != JobStatus.COMPLETED.value:
            reason = job.error or f"job ended {job.status}"
            return self._failure(phase, gap, reason, job.component_type), False
        return None, False

    def _exit_maintenance(self, plan: OrchestrationPlan, gap: HostFirmwareGap,
                          host_name: str) -> Optional[RollbackError]:
        try:
            self.virtualization_manager.exit_maintenance_mode(host_name)
        except RollbackError as e:
            log_with_context(self.logger, "error", str(e), host_id=gap.host_id, plan_id=plan.id,
                             phase="maintenance_exit")
            return e
        self._log(plan, "maintenance_exit", host_id=gap.host_id)
        return None
