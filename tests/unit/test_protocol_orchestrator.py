"""Tests for protocol selection and the per-host update pipeline."""

import pytest

from firmware_rollout.exceptions import CancellationError
from firmware_rollout.gap_analyzer import GapAnalyzer
from firmware_rollout.job_state import JobStateMachine
from firmware_rollout.models import JobStatus, ManagementProtocol, ProtocolProbe
from firmware_rollout.protocol_orchestrator import ProtocolOrchestrator, step_progress
from firmware_rollout.store import StateStore
from tests.helpers import FakeProtocolClient, fake_clients, make_gap, make_host, make_target


REDFISH = ManagementProtocol.REDFISH
RACADM = ManagementProtocol.RACADM
IPMI = ManagementProtocol.IPMI


@pytest.fixture
def clients():
    return fake_clients(REDFISH, RACADM, installed={"BIOS": "1.0.0"})


@pytest.fixture
def orchestrator(clients):
    return ProtocolOrchestrator(clients)


@pytest.fixture
def steps():
    return make_gap("esx-001").update_sequence


def _history(job):
    return [change.to_status for change in job.status_history]


class TestSelection:
    """Test detection and protocol choice."""

    def _probe(self, protocol, supported=True, update_capable=True):
        return ProtocolProbe(protocol=protocol.value, supported=supported,
                             priority=protocol.priority, update_capable=update_capable)

    def test_detect_probes_in_preference_order(self):
        """Probes run from most to least preferred protocol."""
        clients = fake_clients(IPMI, RACADM, REDFISH)

        probes = ProtocolOrchestrator(clients).detect(make_target())

        assert [p.protocol for p in probes] == ["redfish", "racadm", "ipmi"]
        assert all(p.supported for p in probes)

    def test_unsupported_protocol_reported(self):
        """A protocol that fails to answer is reported unsupported."""
        clients = {REDFISH: FakeProtocolClient(REDFISH, supported=False)}

        probes = ProtocolOrchestrator(clients).detect(make_target())

        assert probes[0].supported is False
        assert probes[0].details == "not reachable"

    def test_select_highest_priority(self):
        """Without a preference the highest priority supported protocol wins."""
        probes = [self._probe(RACADM), self._probe(REDFISH, supported=False)]

        assert ProtocolOrchestrator({}).select(probes) == RACADM

    def test_preferred_protocol_leads(self):
        """A supported preferred protocol is tried first."""
        probes = [self._probe(REDFISH), self._probe(RACADM)]

        assert ProtocolOrchestrator.candidates(probes, "racadm") == [RACADM, REDFISH]

    def test_unsupported_preference_ignored(self):
        """An unsupported preferred protocol falls back to priority order."""
        probes = [self._probe(REDFISH), self._probe(RACADM, supported=False)]

        assert ProtocolOrchestrator.candidates(probes, "racadm") == [REDFISH]

    def test_monitoring_only_protocol_not_a_candidate(self):
        """Protocols that cannot flash firmware are skipped."""
        probes = [self._probe(IPMI, update_capable=False)]

        assert ProtocolOrchestrator({}).select(probes) is None

    def test_step_progress(self, steps):
        """Progress grows with steps and pipeline states."""
        two = steps + steps

        assert step_progress(two, 0, "transferring") == 0
        assert step_progress(two, 1, "transferring") == 50
        assert step_progress(steps, 0, "applying") == 40
        assert step_progress([], 0, "verifying") == 100


class TestRunJob:
    """Test the update pipeline."""

    def test_single_step_pipeline(self, orchestrator, clients, steps):
        """A rebooting step walks the full pipeline and installs the version."""
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.COMPLETED.value
        assert _history(job) == ["transferring", "applying", "rebooting", "verifying", "completed"]
        assert job.protocol == "redfish"
        assert job.progress == 100
        assert clients[REDFISH].installed["BIOS"] == "2.0.0"
        assert "probes" in job.telemetry
        assert job.telemetry["estimated_completion"]

    def test_multi_step_sequence(self, multi_step_catalog):
        """Every step runs in order; steps without reboot skip rebooting."""
        steps = GapAnalyzer(multi_step_catalog).analyze_host(
            make_host("esx-001", BIOS="1.0.0", iDRAC="6.10")
        ).update_sequence
        redfish = FakeProtocolClient(REDFISH, installed={"BIOS": "1.0.0", "iDRAC": "6.10"})
        orchestrator = ProtocolOrchestrator({REDFISH: redfish})
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.COMPLETED.value
        assert job.current_step == 3
        assert redfish.operations().count("reboot") == 2
        assert [c.detail for c in redfish.calls if c.operation == "transfer"] == ["1.5.0", "2.0.0", "7.00"]
        assert _history(job)[-3:] == ["applying", "verifying", "completed"]

    def test_preferred_protocol_used(self, orchestrator, clients, steps):
        """The operator's preferred protocol runs the job."""
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps, preferred_protocol="racadm")

        assert job.protocol == "racadm"
        assert "transfer" not in clients[REDFISH].operations()

    def test_no_supported_protocol(self, steps):
        """Jobs fail when nothing answers."""
        clients = fake_clients(REDFISH, RACADM, supported=False)
        orchestrator = ProtocolOrchestrator(clients)
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert "no supported update protocol" in job.error

    def test_monitoring_only_host_fails(self, steps):
        """IPMI alone cannot update firmware."""
        clients = {IPMI: FakeProtocolClient(IPMI, update_capable=False)}
        orchestrator = ProtocolOrchestrator(clients)
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value

    def test_version_mismatch_fails(self, orchestrator, clients, steps):
        """A controller reporting the wrong version after the update fails the job."""
        clients[REDFISH].get_firmware_version = lambda target, component_type: "1.0.0"
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert "expected 2.0.0" in job.error
        assert job.fallback_history == []

    def test_unhealthy_host_fails_validated_step(self):
        """Boot-critical steps check host health after verification."""
        steps = make_gap("esx-001", validation_required=True).update_sequence
        redfish = FakeProtocolClient(REDFISH, healthy=False)
        orchestrator = ProtocolOrchestrator({REDFISH: redfish})
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert "unhealthy" in job.error

    def test_job_persisted(self, tmp_path, clients, steps):
        """Jobs are saved on creation and every transition."""
        store = StateStore(tmp_path)
        orchestrator = ProtocolOrchestrator(clients, JobStateMachine(store))
        job = orchestrator.create_job("esx-001", steps, plan_id="plan-1")

        assert store.load_job(job.id).status == JobStatus.QUEUED.value

        orchestrator.run_job(job, make_target(), steps)

        assert store.load_job(job.id).status == JobStatus.COMPLETED.value
        assert len(store.read_log("plan-1")) == 5


class TestHealthGate:
    """Test the hardware health check run before the first transfer."""

    def test_blocking_issue_fails_job_before_transfer(self, orchestrator, clients, steps):
        """A critical hardware fault fails the job without touching the firmware."""
        clients[REDFISH].hardware_issues.append("Power Supply 2: Critical")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert "Power Supply 2: Critical" in job.error
        assert "transfer" not in clients[REDFISH].operations()
        assert job.telemetry["health_gate"]["passed"] is False
        assert clients[REDFISH].installed["BIOS"] == "1.0.0"

    def test_unreadable_controller_fails_job(self, orchestrator, clients, steps):
        """A gate that cannot run blocks the update."""
        clients[REDFISH].fail("preflight", reason="connection refused")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert "hardware health gate failed" in job.error

    def test_passing_gate_recorded(self, orchestrator, clients, steps):
        """A healthy host is updated and the gate result kept in telemetry."""
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.COMPLETED.value
        assert clients[REDFISH].operations().index("preflight") < clients[REDFISH].operations().index("transfer")
        assert job.telemetry["health_gate"]["passed"] is True

    def test_gate_disabled(self, orchestrator, clients, steps):
        """The gate can be switched off per job."""
        clients[REDFISH].hardware_issues.append("Fan 3: Critical")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps, health_gate=False)

        assert job.status == JobStatus.COMPLETED.value
        assert "preflight" not in clients[REDFISH].operations()


class TestFallback:
    """Test protocol fallback."""

    def test_recoverable_transfer_failure_falls_back_once(self, orchestrator, clients, steps):
        """One recoverable failure produces exactly one fallback entry."""
        clients[REDFISH].fail("transfer", recoverable=True, reason="task service unavailable")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.COMPLETED.value
        assert len(job.fallback_history) == 1
        record = job.fallback_history[0]
        assert (record.from_protocol, record.to_protocol) == ("redfish", "racadm")
        assert "task service unavailable" in record.reason
        assert job.protocol == "racadm"
        assert clients[RACADM].installed["BIOS"] == "2.0.0"
        assert job.to_progress().fallback_count == 1

    def test_apply_failure_restages_on_next_protocol(self, orchestrator, clients, steps):
        """Failures while applying send the step back to transferring."""
        clients[REDFISH].fail("apply")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.COMPLETED.value
        assert _history(job)[:4] == ["transferring", "applying", "transferring", "applying"]

    def test_unrecoverable_failure_does_not_fall_back(self, orchestrator, clients, steps):
        """Rejected images fail the job on the current protocol."""
        clients[REDFISH].fail("apply", recoverable=False, reason="image signature invalid")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert job.fallback_history == []
        assert "transfer" not in clients[RACADM].operations()

    def test_fallback_disabled(self, orchestrator, clients, steps):
        """Without fallback a recoverable failure is final."""
        clients[REDFISH].fail("transfer")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps, enable_fallback=False)

        assert job.status == JobStatus.FAILED.value
        assert job.fallback_history == []

    def test_all_protocols_exhausted(self, orchestrator, clients, steps):
        """The job fails once the last protocol fails."""
        clients[REDFISH].fail("transfer")
        clients[RACADM].fail("transfer")
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.FAILED.value
        assert len(job.fallback_history) == 1


class TestCancellation:
    """Test cancelling jobs."""

    def test_cancel_queued_job(self, orchestrator, clients, steps):
        """Queued jobs cancel without touching the host."""
        job = orchestrator.create_job("esx-001", steps)

        orchestrator.cancel_job(job)
        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.CANCELLED.value
        assert clients[REDFISH].calls == []

    def test_cancel_while_transferring(self, orchestrator, clients, steps):
        """Cancelling during the transfer discards the staged image."""
        job = orchestrator.create_job("esx-001", steps)
        clients[REDFISH].on("transfer", lambda step: orchestrator.cancel_job(job))

        orchestrator.run_job(job, make_target(), steps)

        assert job.status == JobStatus.CANCELLED.value
        assert "abort" in clients[REDFISH].operations()
        assert "apply" not in clients[REDFISH].operations()
        assert clients[REDFISH].installed["BIOS"] == "1.0.0"

    def test_cancel_while_rebooting_rejected(self, orchestrator, clients, steps):
        """Cancellation is refused once flashing started, and the job completes."""
        job = orchestrator.create_job("esx-001", steps)
        rejected = []

        def attempt_cancel():
            try:
                orchestrator.cancel_job(job)
            except CancellationError as e:
                rejected.append(e)

        clients[REDFISH].on("reboot", attempt_cancel)

        orchestrator.run_job(job, make_target(), steps)

        assert len(rejected) == 1
        assert rejected[0].status == JobStatus.REBOOTING.value
        assert job.status == JobStatus.COMPLETED.value

    def test_cancel_after_earlier_step_flashed_rejected(self, multi_step_catalog):
        """A later step's transfer cannot be cancelled once an earlier step was applied."""
        steps = GapAnalyzer(multi_step_catalog).analyze_host(make_host("esx-001", BIOS="1.0.0")).update_sequence
        redfish = FakeProtocolClient(REDFISH, installed={"BIOS": "1.0.0"})
        orchestrator = ProtocolOrchestrator({REDFISH: redfish})
        job = orchestrator.create_job("esx-001", steps)
        rejected = []

        def attempt_cancel(step):
            if step.step_number != 2:
                return
            try:
                orchestrator.cancel_job(job)
            except CancellationError as e:
                rejected.append(e)

        redfish.on("transfer", attempt_cancel)

        orchestrator.run_job(job, make_target(), steps)

        assert len(rejected) == 1
        assert rejected[0].status == JobStatus.TRANSFERRING.value
        assert "already flashed" in str(rejected[0])
        assert job.status == JobStatus.COMPLETED.value
        assert redfish.installed["BIOS"] == "2.0.0"
        assert "abort" not in redfish.operations()

    def test_cancel_finished_job(self, orchestrator, steps):
        """Terminal jobs cannot be cancelled."""
        job = orchestrator.create_job("esx-001", steps)
        orchestrator.run_job(job, make_target(), steps)

        with pytest.raises(CancellationError) as exc_info:
            orchestrator.cancel_job(job)

        assert "already finished" in str(exc_info.value)
