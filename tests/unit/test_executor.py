"""Tests for rolling plan execution."""

from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from firmware_rollout.exceptions import ApprovalRequiredError, CapacityViolationError
from firmware_rollout.executor import CapacityTracker, ClusterRollingExecutor, PlanControl
from firmware_rollout.job_state import JobStateMachine
from firmware_rollout.models import (
    ClusterCapacity, JobStatus, MaintenanceWindow, ManagementProtocol, OrchestrationConfig,
    PlanStatus
)
from firmware_rollout.planner import OrchestrationPlanner
from firmware_rollout.protocol_orchestrator import ProtocolOrchestrator
from firmware_rollout.store import StateStore
from firmware_rollout.windows import MaintenanceCalendar
from tests.helpers import FakeCredentialResolver, FakeVirtualizationManager, fake_clients, make_gap


REDFISH = ManagementProtocol.REDFISH
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _cluster(name, count, **kwargs):
    return [make_gap(f"{name}-{i}", cluster=name, **kwargs) for i in range(count)]


def _plan(gaps, **config):
    config.setdefault("require_manual_approval", False)
    return OrchestrationPlanner(clock=lambda: NOW).plan(gaps, OrchestrationConfig(**config))


def _vcenter(gaps, drs_enabled=True, active=None):
    sizes = Counter(g.cluster_name for g in gaps if g.cluster_name)
    clusters = {
        name: ClusterCapacity(active=active if active is not None else size, total=size,
                              drs_enabled=drs_enabled)
        for name, size in sizes.items()
    }
    return FakeVirtualizationManager(clusters, {g.host_id: g.cluster_name for g in gaps if g.cluster_name})


def _executor(clients, vcenter=None, store=None, calendar=None):
    state_machine = JobStateMachine(store)
    orchestrator = ProtocolOrchestrator(clients, state_machine)
    return ClusterRollingExecutor(
        orchestrator, state_machine, store, vcenter, FakeCredentialResolver(),
        calendar=calendar, clock=lambda: NOW,
    )


def _transfers(client, host_id):
    return sum(1 for call in client.calls if call.operation == "transfer" and call.host_id == host_id)


@pytest.fixture
def clients():
    return fake_clients(REDFISH)


class TestCapacityTracker:
    """Test active-host accounting."""

    def test_acquire_and_release(self):
        """Hosts leave and rejoin service."""
        tracker = CapacityTracker()
        tracker.seed("prod-01", active_hosts=4, min_active_hosts=2)

        tracker.acquire("prod-01", 2)
        assert tracker.active("prod-01") == 2

        tracker.release("prod-01")
        assert tracker.active("prod-01") == 3

    def test_acquire_below_minimum_rejected(self):
        """Taking hosts below the floor raises and changes nothing."""
        tracker = CapacityTracker()
        tracker.seed("prod-01", active_hosts=3, min_active_hosts=2)

        with pytest.raises(CapacityViolationError) as exc_info:
            tracker.acquire("prod-01", 2)

        assert exc_info.value.min_active_hosts == 2
        assert tracker.active("prod-01") == 3

    def test_second_holder_keeps_live_count(self):
        """Seeding a cluster that is already held leaves its counter alone."""
        tracker = CapacityTracker()
        assert tracker.seed("prod-01", active_hosts=4, min_active_hosts=2) is True
        tracker.acquire("prod-01")

        assert tracker.seed("prod-01", active_hosts=4, min_active_hosts=2) is False
        assert tracker.active("prod-01") == 3
        assert tracker.holders("prod-01") == 2

        tracker.unseed("prod-01")
        tracker.unseed("prod-01")
        assert tracker.holders("prod-01") == 0

    def test_plan_control(self):
        """Cancellation outranks pause."""
        control = PlanControl()
        assert control.interrupted() is None

        control.pause_requested.set()
        assert control.interrupted() == "paused"

        control.cancel_requested.set()
        assert control.interrupted() == "cancelled"


class TestRollingExecution:
    """Test batches, maintenance mode and capacity."""

    def test_rolling_update_completes(self, clients, tmp_path):
        """All hosts are updated in batches and returned to service."""
        gaps = _cluster("prod-01", 4)
        vcenter = _vcenter(gaps)
        store = StateStore(tmp_path)
        executor = _executor(clients, vcenter, store)
        plan = _plan(gaps, max_parallel_hosts_per_cluster=2)

        executor.execute(plan)

        assert plan.status == PlanStatus.COMPLETED.value
        assert plan.phases[0].hosts_per_batch == 2
        assert set(plan.job_ids) == {g.host_id for g in gaps}
        assert all(store.load_job(j).status == JobStatus.COMPLETED.value for j in plan.job_ids.values())
        assert vcenter.in_maintenance == set()
        assert executor.capacity.active("prod-01") == 4
        assert plan.progress_for(1).last_completed_host_index == 3
        assert store.load_plan(plan.id).status == PlanStatus.COMPLETED.value

    def test_capacity_floor_never_crossed(self, clients):
        """At most total minus minimum hosts are in maintenance at once."""
        gaps = _cluster("prod-01", 6)
        vcenter = _vcenter(gaps)
        plan = _plan(gaps, max_parallel_hosts_per_cluster=6)

        _executor(clients, vcenter).execute(plan)

        phase = plan.phases[0]
        assert phase.min_active_hosts == 3
        assert vcenter.max_in_maintenance["prod-01"] <= phase.total_hosts - phase.min_active_hosts
        assert plan.status == PlanStatus.COMPLETED.value

    def test_concurrent_plans_share_cluster_count(self, clients):
        """A plan starting on a cluster another plan is updating joins the live count."""
        gaps = _cluster("prod-01", 4)
        vcenter = _vcenter(gaps)
        executor = _executor(clients, vcenter)
        first, second = _plan(gaps[:1]), _plan(gaps[1:2])
        for plan in (first, second):
            plan.phases[0].total_hosts = 4
            plan.phases[0].min_active_hosts = 2
        observed = []

        def start_second_plan(step):
            if observed:
                return
            observed.append(executor.capacity.active("prod-01"))
            executor.execute(second)
            observed.append(executor.capacity.active("prod-01"))

        clients[REDFISH].on("transfer", start_second_plan)

        executor.execute(first)

        assert first.status == PlanStatus.COMPLETED.value
        assert second.status == PlanStatus.COMPLETED.value
        assert observed == [3, 3]
        assert vcenter.max_in_maintenance["prod-01"] == 2
        assert executor.capacity.active("prod-01") == 4
        assert executor.capacity.holders("prod-01") == 0

    def test_capacity_violation_pauses_plan(self, clients):
        """A cluster already below capacity pauses the plan with an alert."""
        gaps = _cluster("prod-01", 4)
        vcenter = _vcenter(gaps, active=2)
        plan = _plan(gaps)

        _executor(clients, vcenter).execute(plan)

        assert plan.status == PlanStatus.PAUSED.value
        assert plan.job_ids == {}
        assert "cannot release" in plan.alerts[0]

    def test_clusters_run_in_parallel(self, clients):
        """Phases of one concurrency group all complete."""
        gaps = _cluster("prod-01", 2) + _cluster("prod-02", 2)
        vcenter = _vcenter(gaps)
        plan = _plan(gaps, max_parallel_clusters=2)

        _executor(clients, vcenter).execute(plan)

        assert plan.status == PlanStatus.COMPLETED.value
        assert len(plan.job_ids) == 4

    def test_standalone_host_skips_maintenance_mode(self, clients):
        """Standalone hosts are updated without the virtualization manager."""
        gaps = [make_gap("bare-001", cluster=None)]
        vcenter = _vcenter(gaps)
        plan = _plan(gaps)

        _executor(clients, vcenter).execute(plan)

        assert plan.status == PlanStatus.COMPLETED.value
        assert vcenter.events == []
        assert _transfers(clients[REDFISH], "bare-001") == 1

    def test_without_virtualization_manager(self, clients):
        """Clusters without a manager are seeded from the plan and skip maintenance mode."""
        plan = _plan(_cluster("prod-01", 2))

        _executor(clients).execute(plan)

        assert plan.status == PlanStatus.COMPLETED.value


class TestFailures:
    """Test failure policy."""

    def test_rollback_policy_halts_remaining_batches(self, clients, tmp_path):
        """The first failure stops the plan when rollback on failure is set."""
        gaps = _cluster("prod-01", 3)
        store = StateStore(tmp_path)
        clients[REDFISH].fail("transfer", recoverable=False, reason="image rejected")
        plan = _plan(gaps, rollback_on_failure=True)

        _executor(clients, _vcenter(gaps), store).execute(plan)

        assert plan.status == PlanStatus.FAILED.value
        assert list(plan.job_ids) == ["prod-01-0"]
        assert "prod-01-0" in plan.failure_reason
        assert plan.progress_for(1).failed_hosts == ["prod-01-0"]
        assert "host_failure" in [e["event"] for e in store.read_log(plan.id)]

    def test_conservative_halts_without_rollback(self, clients):
        """Conservative risk tolerance halts even without rollback on failure."""
        gaps = _cluster("prod-01", 3)
        clients[REDFISH].fail("transfer", recoverable=False)
        plan = _plan(gaps, rollback_on_failure=False, risk_tolerance="conservative")

        _executor(clients, _vcenter(gaps)).execute(plan)

        assert plan.status == PlanStatus.FAILED.value

    def test_failures_accumulate_without_halt(self, clients):
        """Other hosts continue and the plan completes with failures recorded."""
        gaps = _cluster("prod-01", 3)
        clients[REDFISH].fail("transfer", recoverable=False)
        plan = _plan(gaps, rollback_on_failure=False)

        _executor(clients, _vcenter(gaps)).execute(plan)

        assert plan.status == PlanStatus.COMPLETED.value
        assert [f.host_id for f in plan.failures] == ["prod-01-0"]
        assert len(plan.job_ids) == 3
        assert plan.status_history[-1].reason == "1 host failure(s)"
        assert plan.alerts == []

    def test_critical_failure_raises_alert(self, clients):
        """Failed critical firmware is escalated."""
        gaps = _cluster("prod-01", 3, criticality="critical")
        clients[REDFISH].fail("transfer", recoverable=False, reason="image rejected")
        plan = _plan(gaps, rollback_on_failure=False)

        _executor(clients, _vcenter(gaps)).execute(plan)

        assert plan.failures[0].critical is True
        assert len(plan.alerts) == 1
        assert "Critical firmware update failed on prod-01-0" in plan.alerts[0]

    def test_health_gate_failure_returns_host_to_service(self, clients):
        """A host blocked by its hardware check is never flashed and leaves maintenance mode."""
        gaps = _cluster("prod-01", 3)
        vcenter = _vcenter(gaps)
        clients[REDFISH].fail("preflight", recoverable=False, reason="Power Supply 1: Critical")
        plan = _plan(gaps, rollback_on_failure=False)
        executor = _executor(clients, vcenter)

        executor.execute(plan)

        assert [f.host_id for f in plan.failures] == ["prod-01-0"]
        assert "Power Supply 1: Critical" in plan.failures[0].reason
        assert _transfers(clients[REDFISH], "prod-01-0") == 0
        assert ("exit", "prod-01-0") in vcenter.events
        assert executor.capacity.active("prod-01") == 3

    def test_evacuation_refused_without_drs(self, clients):
        """Hosts with running VMs are not forced into maintenance without DRS."""
        gaps = _cluster("prod-01", 3)
        vcenter = _vcenter(gaps, drs_enabled=False)
        vcenter.running_vms.add("prod-01-1")
        plan = _plan(gaps, rollback_on_failure=False)
        executor = _executor(clients, vcenter)

        executor.execute(plan)

        assert [f.host_id for f in plan.failures] == ["prod-01-1"]
        assert "DRS is disabled" in plan.failures[0].reason
        assert ("enter", "prod-01-1") not in vcenter.events
        assert _transfers(clients[REDFISH], "prod-01-1") == 0
        assert executor.capacity.active("prod-01") == 3

    def test_failed_evacuation(self, clients):
        """Maintenance mode failures fail the host without flashing it."""
        gaps = _cluster("prod-01", 3)
        vcenter = _vcenter(gaps)
        vcenter.fail_enter.add("prod-01-0")
        plan = _plan(gaps)

        _executor(clients, vcenter).execute(plan)

        assert plan.status == PlanStatus.FAILED.value
        assert _transfers(clients[REDFISH], "prod-01-0") == 0

    def test_failed_maintenance_exit_halts(self, clients):
        """A host stuck in maintenance mode halts the plan regardless of policy."""
        gaps = _cluster("prod-01", 3)
        vcenter = _vcenter(gaps)
        vcenter.fail_exit.add("prod-01-0")
        plan = _plan(gaps, rollback_on_failure=False)
        executor = _executor(clients, vcenter)

        executor.execute(plan)

        assert plan.status == PlanStatus.FAILED.value
        assert "Rollback failed" in plan.failures[0].reason
        assert list(plan.job_ids) == ["prod-01-0"]
        # The stuck host stays out of service
        assert executor.capacity.active("prod-01") == 2


class TestPlanLifecycle:
    """Test approval, windows, pause and resume."""

    def test_pending_plan_rejected(self, clients):
        """Plans awaiting approval cannot run."""
        plan = _plan(_cluster("prod-01", 2), require_manual_approval=True)

        with pytest.raises(ApprovalRequiredError):
            _executor(clients).execute(plan)

        assert plan.status == PlanStatus.PENDING_APPROVAL.value

    def test_terminal_plan_untouched(self, clients):
        """Finished plans are returned as is."""
        plan = _plan(_cluster("prod-01", 2))
        executor = _executor(clients)
        executor.execute(plan)
        history = len(plan.status_history)

        executor.execute(plan)

        assert len(plan.status_history) == history

    def test_closed_window_pauses_phase(self, clients):
        """Phases do not start outside their maintenance window."""
        calendar = MaintenanceCalendar([
            MaintenanceWindow("prod-01", (NOW + timedelta(hours=6)).isoformat(), 120, recurrence_days=7)
        ])
        plan = _plan(_cluster("prod-01", 2), respect_maintenance_windows=True)

        _executor(clients, calendar=calendar).execute(plan)

        assert plan.status == PlanStatus.PAUSED.value
        assert "maintenance window is closed" in plan.status_history[-1].reason
        assert plan.job_ids == {}

    def test_pause_and_resume_from_persisted_progress(self, clients, tmp_path):
        """A paused plan resumes with the next unprocessed host."""
        gaps = _cluster("prod-01", 3)
        store = StateStore(tmp_path)
        executor = _executor(clients, _vcenter(gaps), store)
        plan = _plan(gaps)
        store.save_plan(plan)

        paused = []

        def pause_once():
            if not paused:
                paused.append(executor.request_pause(plan.id))

        clients[REDFISH].on("reboot", pause_once)
        executor.execute(plan)

        assert paused == [True]
        assert plan.status == PlanStatus.PAUSED.value
        saved = store.load_plan(plan.id)
        assert saved.progress_for(1).last_completed_host_index == 0

        resumed = _executor(clients, _vcenter(gaps), store).execute(saved)

        assert resumed.status == PlanStatus.COMPLETED.value
        assert resumed.retry_count == 1
        for gap in gaps:
            assert _transfers(clients[REDFISH], gap.host_id) == 1

    def test_cancel_between_batches(self, clients):
        """Cancellation stops the plan after the in-flight batch."""
        gaps = _cluster("prod-01", 3)
        executor = _executor(clients, _vcenter(gaps))
        plan = _plan(gaps)
        clients[REDFISH].on("reboot", lambda: executor.request_cancel(plan.id))

        executor.execute(plan)

        assert plan.status == PlanStatus.CANCELLED.value
        assert list(plan.job_ids) == ["prod-01-0"]

    def test_controls_ignore_unknown_plans(self, clients):
        """Pause and cancel report plans not running here."""
        executor = _executor(clients)

        assert executor.request_pause("plan-x") is False
        assert executor.request_cancel("plan-x") is False
        assert executor.running_plan_ids() == []
