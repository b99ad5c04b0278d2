"""Service facade exposing gap analysis, planning and execution operations."""

from typing import Any, Dict, List, Optional, Tuple

from firmware_rollout.catalog import FirmwareCatalog
from firmware_rollout.compatibility import ClusterCompatibilityAnalyzer, CompatibilityMatrix
from firmware_rollout.config import Config
from firmware_rollout.exceptions import ApprovalRequiredError, InvalidTransitionError
from firmware_rollout.executor import CapacityTracker, ClusterRollingExecutor
from firmware_rollout.gap_analyzer import GapAnalyzer
from firmware_rollout.inventory import CredentialResolver, HostInventory
from firmware_rollout.job_state import JobStateMachine
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    ClusterCompatibilityAnalysis, HostFirmwareGap, OrchestrationConfig, OrchestrationPlan,
    PlanStatus, UpdateJob, UpdateProgress
)
from firmware_rollout.planner import OrchestrationPlanner
from firmware_rollout.protocol_orchestrator import ProtocolOrchestrator
from firmware_rollout.protocols import build_protocol_clients
from firmware_rollout.store import StateStore
from firmware_rollout.vcenter import VCenterClient
from firmware_rollout.windows import MaintenanceCalendar
from firmware_rollout.worker_pool import WorkerPool


class FirmwareRolloutService:
    """
    Entry point used by the CLI and the daemon.

    Plans and jobs are persisted in the store on every change, so any
    process can read progress; execution control (pause, cancel) reaches
    a running plan directly when it runs in this process and goes through
    the stored record otherwise.
    """

    def __init__(
        self,
        gap_analyzer: GapAnalyzer,
        compatibility_analyzer: ClusterCompatibilityAnalyzer,
        planner: OrchestrationPlanner,
        orchestrator: ProtocolOrchestrator,
        executor: ClusterRollingExecutor,
        store: StateStore,
        worker_pool: Optional[WorkerPool] = None,
    ):
        """
        Initialize service.

        Args:
            gap_analyzer: Gap analyzer
            compatibility_analyzer: Cluster compatibility analyzer
            planner: Orchestration planner
            orchestrator: Protocol orchestrator
            executor: Rolling executor
            store: Plan/job store
            worker_pool: Pool used for asynchronous execution
        """
        self.gap_analyzer = gap_analyzer
        self.compatibility_analyzer = compatibility_analyzer
        self.planner = planner
        self.orchestrator = orchestrator
        self.executor = executor
        self.store = store
        self.state_machine = executor.state_machine
        self.worker_pool = worker_pool
        self.logger = get_logger("firmware_rollout.service")

    @classmethod
    def from_config(cls, config: Config, worker_pool: Optional[WorkerPool] = None) -> "FirmwareRolloutService":
        """
        Wire the engine from configuration.

        Raises:
            ConfigurationError: If the catalog, matrix, windows or protocols are invalid
        """
        catalog = FirmwareCatalog.load(config.catalog_file, config.default_step_duration_minutes)
        matrix = CompatibilityMatrix.load(config.compatibility_matrix_file)
        calendar = MaintenanceCalendar.from_config(config.maintenance_windows)
        inventory = HostInventory(config.inventory_file)
        credentials = CredentialResolver(
            inventory,
            username_env=config.get("credentials.username_env"),
            password_env=config.get("credentials.password_env"),
        )
        vcenter = VCenterClient.from_config(config) if config.vcenter_url else None

        store = StateStore(config.work_dir)
        state_machine = JobStateMachine(store)
        compatibility_analyzer = ClusterCompatibilityAnalyzer(
            matrix,
            min_active_ratio=config.min_active_ratio,
            min_active_overrides=config.min_active_overrides,
            capacity_provider=vcenter,
        )
        orchestrator = ProtocolOrchestrator(build_protocol_clients(config), state_machine)
        executor = ClusterRollingExecutor(
            orchestrator,
            state_machine,
            store=store,
            virtualization_manager=vcenter,
            credential_resolver=credentials,
            calendar=calendar,
            capacity_tracker=CapacityTracker(),
        )
        return cls(
            gap_analyzer=GapAnalyzer(catalog, inventory),
            compatibility_analyzer=compatibility_analyzer,
            planner=OrchestrationPlanner(compatibility_analyzer, calendar),
            orchestrator=orchestrator,
            executor=executor,
            store=store,
            worker_pool=worker_pool,
        )

    # Analysis and planning

    def analyze_hosts(self, host_ids: List[str]) -> Tuple[List[HostFirmwareGap], Dict[str, str]]:
        """Gap analysis with per-host failures (keyed by host id)."""
        return self.gap_analyzer.analyze_hosts(host_ids)

    def analyze_gaps(self, host_ids: List[str]) -> List[HostFirmwareGap]:
        """
        Compute the firmware gap of each host.

        Hosts that cannot be analysed are logged and left out.
        """
        gaps, _ = self.analyze_hosts(host_ids)
        return gaps

    def analyze_cluster_compatibility(self, gaps: List[HostFirmwareGap],
                                      requested_cap: Optional[int] = None) -> List[ClusterCompatibilityAnalysis]:
        """Rolling-update feasibility of every cluster in ``gaps``."""
        return self.compatibility_analyzer.analyze(gaps, requested_cap)

    def plan_orchestration(self, gaps: List[HostFirmwareGap], config: OrchestrationConfig) -> OrchestrationPlan:
        """
        Build and persist an orchestration plan.

        Raises:
            ConfigurationError: If the policy is invalid
            CapacityViolationError: If a conservative plan targets an infeasible cluster
            MaintenanceWindowViolationError: If a cluster's window never opens again
        """
        plan = self.planner.plan(gaps, config)
        self.store.save_plan(plan)
        self.store.append_log(
            plan.id, "plan_created",
            status=plan.status,
            phases=len(plan.phases),
            hosts=sum(len(p.hosts) for p in plan.phases),
            total_duration_hours=plan.total_duration_hours,
        )
        return plan

    # Plan lifecycle

    def get_plan(self, plan_id: str) -> OrchestrationPlan:
        """
        Current state of a plan (the live record while it runs in this process).

        Raises:
            PlanNotFoundError: If the plan does not exist
        """
        return self.executor.running_plan(plan_id) or self.store.load_plan(plan_id)

    def list_plans(self, status: Optional[str] = None) -> List[OrchestrationPlan]:
        """Saved plans, optionally filtered by status."""
        return self.store.list_plans(status)

    def approve_plan(self, plan_id: str) -> OrchestrationPlan:
        """
        Approve a plan awaiting manual approval.

        Raises:
            InvalidTransitionError: If the plan is not pending approval
        """
        plan = self.store.load_plan(plan_id)
        self.state_machine.transition_plan(plan, PlanStatus.APPROVED.value, "approved by operator")
        return plan

    def _run_plan(self, plan_id: str) -> None:
        """Worker entry point for asynchronous execution."""
        plan = self.store.load_plan(plan_id)
        self.executor.execute(plan)

    def execute_plan(self, plan_id: str, wait: bool = False) -> OrchestrationPlan:
        """
        Start or resume a plan.

        Calling it for a plan that is already running, finished or queued
        changes nothing.

        Args:
            plan_id: Plan identifier
            wait: Run in the calling thread instead of the worker pool

        Returns:
            The plan (final state when ``wait`` is set)

        Raises:
            ApprovalRequiredError: If the plan still awaits approval
        """
        running = self.executor.running_plan(plan_id)
        if running is not None:
            return running

        plan = self.store.load_plan(plan_id)
        if plan.is_terminal:
            return plan
        if plan.status == PlanStatus.PENDING_APPROVAL.value:
            raise ApprovalRequiredError(plan_id)

        if wait or self.worker_pool is None or not self.worker_pool.is_running:
            return self.executor.execute(plan)

        submitted = self.worker_pool.submit(plan_id, f"plan {plan_id}", self._run_plan, plan_id)
        if not submitted:
            log_with_context(self.logger, "error", f"Could not queue plan {plan_id}", plan_id=plan_id)
        return plan

    def pause_plan(self, plan_id: str) -> OrchestrationPlan:
        """
        Pause a running plan once its in-flight batches finish.

        Raises:
            InvalidTransitionError: If the plan is not running
        """
        if self.executor.request_pause(plan_id):
            return self.executor.running_plan(plan_id) or self.store.load_plan(plan_id)
        # Running status left behind by a stopped process
        plan = self.store.load_plan(plan_id)
        self.state_machine.transition_plan(plan, PlanStatus.PAUSED.value, "paused by operator")
        return plan

    def resume_plan(self, plan_id: str, wait: bool = False) -> OrchestrationPlan:
        """
        Resume a paused (or interrupted) plan from its last completed host.

        Raises:
            InvalidTransitionError: If the plan is neither paused nor running
        """
        plan = self.get_plan(plan_id)
        if plan.status not in (PlanStatus.PAUSED.value, PlanStatus.RUNNING.value):
            raise InvalidTransitionError(plan_id, plan.status, PlanStatus.RUNNING.value)
        return self.execute_plan(plan_id, wait=wait)

    def cancel_plan(self, plan_id: str) -> OrchestrationPlan:
        """
        Cancel a plan. In-flight jobs finish; no further batch starts.

        Raises:
            InvalidTransitionError: If the plan already finished
        """
        if self.executor.request_cancel(plan_id):
            return self.executor.running_plan(plan_id) or self.store.load_plan(plan_id)
        plan = self.store.load_plan(plan_id)
        self.state_machine.transition_plan(plan, PlanStatus.CANCELLED.value, "cancelled by operator")
        return plan

    def recover_interrupted_plans(self) -> List[str]:
        """Resume plans left ``running`` by a previous process."""
        recovered = []
        for plan in self.store.list_plans(PlanStatus.RUNNING.value):
            if self.executor.running_plan(plan.id) is None:
                self.logger.info(f"Resuming interrupted plan {plan.id}")
                self.execute_plan(plan.id)
                recovered.append(plan.id)
        return recovered

    # Jobs

    def _get_job(self, job_id: str) -> UpdateJob:
        return self.orchestrator.active_job(job_id) or self.store.load_job(job_id)

    def get_job_progress(self, job_id: str) -> UpdateProgress:
        """
        Progress of an update job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        return self._get_job(job_id).to_progress()

    def cancel_job(self, job_id: str) -> UpdateJob:
        """
        Cancel a job that is queued or still transferring.

        Raises:
            CancellationError: If the job already started flashing or finished
        """
        return self.orchestrator.cancel_job(self._get_job(job_id))

    # Reporting

    def get_execution_log(self, plan_id: str) -> List[Dict[str, Any]]:
        """Audit trail of a plan."""
        self.store.load_plan(plan_id)
        return self.store.read_log(plan_id)

    def get_plan_report(self, plan_id: str) -> Dict[str, Any]:
        """
        Summary of a plan for operators.

        Every number is derived from the plan record and its jobs.
        """
        plan = self.get_plan(plan_id)
        phases = []
        hosts_total = hosts_done = 0
        for phase in plan.phases:
            progress = plan.progress_for(phase.phase_number)
            processed = progress.last_completed_host_index + 1
            hosts_total += len(phase.hosts)
            hosts_done += processed - len(progress.failed_hosts)
            phases.append({
                "phase_number": phase.phase_number,
                "cluster_name": phase.cluster_name,
                "status": progress.status,
                "hosts": len(phase.hosts),
                "hosts_processed": processed,
                "failed_hosts": list(progress.failed_hosts),
                "hosts_per_batch": phase.hosts_per_batch,
                "estimated_duration_hours": phase.estimated_duration_hours,
                "scheduled_start": phase.scheduled_start,
            })

        return {
            "plan_id": plan.id,
            "status": plan.status,
            "strategy": plan.config.strategy,
            "risk_tolerance": plan.config.risk_tolerance,
            "current_phase": plan.current_phase,
            "retry_count": plan.retry_count,
            "total_duration_hours": plan.total_duration_hours,
            "failure_reason": plan.failure_reason,
            "hosts_total": hosts_total,
            "hosts_updated": hosts_done,
            "hosts_failed": len(plan.failures),
            "phases": phases,
            "failures": [f.to_dict() for f in plan.failures],
            "alerts": list(plan.alerts),
            "warnings": list(plan.warnings),
            "jobs": {
                host_id: self._get_job(job_id).to_progress().to_dict()
                for host_id, job_id in plan.job_ids.items()
            },
            "rollback_plan": list(plan.rollback_plan),
            "created_at": plan.created_at,
            "started_at": plan.started_at,
            "completed_at": plan.completed_at,
        }
