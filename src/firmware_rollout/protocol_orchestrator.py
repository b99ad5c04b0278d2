"""Protocol detection, selection and the per-host update pipeline."""

import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from firmware_rollout.exceptions import (
    CancellationError, InvalidTransitionError, ProtocolExecutionError
)
from firmware_rollout.job_state import CANCELLABLE_JOB_STATUSES, JobStateMachine
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    FallbackRecord, JobStatus, ManagementProtocol, ProtocolProbe, UpdateJob, UpdateStep, utc_now
)
from firmware_rollout.protocols.base import ManagementTarget, ProtocolClient


# Share of a step's progress reached when entering each state
STEP_PROGRESS = {
    JobStatus.TRANSFERRING.value: 0.0,
    JobStatus.APPLYING.value: 0.4,
    JobStatus.REBOOTING.value: 0.7,
    JobStatus.VERIFYING.value: 0.85,
}


def step_progress(steps: List[UpdateStep], index: int, status: str) -> int:
    """Overall job progress when step ``index`` enters ``status``."""
    if not steps:
        return 100
    return int(100 * (index + STEP_PROGRESS.get(status, 0.0)) / len(steps))


class _StepCancelled(Exception):
    """The job was cancelled while its image was being staged."""


class ProtocolOrchestrator:
    """
    Runs update jobs against a host's management controller.

    Protocols are probed in preference order. A job runs each step of the
    host's update sequence through ``transferring -> applying ->
    (rebooting) -> verifying``; recoverable transfer/apply failures move
    the step to the next supported protocol when fallback is enabled.
    """

    def __init__(
        self,
        clients: Dict[ManagementProtocol, ProtocolClient],
        state_machine: Optional[JobStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize protocol orchestrator.

        Args:
            clients: Protocol clients keyed by protocol
            state_machine: Status gate (and persistence) for jobs
            clock: Source of the current time
        """
        self.clients = clients
        self.state_machine = state_machine or JobStateMachine()
        self.clock = clock
        self.logger = get_logger("firmware_rollout.protocol_orchestrator")
        self._active_jobs: Dict[str, UpdateJob] = {}
        self._active_lock = threading.Lock()

    def detect(self, target: ManagementTarget) -> List[ProtocolProbe]:
        """
        Probe every configured protocol, most preferred first.

        Args:
            target: Host management endpoint

        Returns:
            One probe result per configured protocol
        """
        probes = []
        for protocol in ManagementProtocol.ordered():
            client = self.clients.get(protocol)
            if client is None:
                continue
            probe = client.probe(target)
            self.logger.debug(
                f"{target.host_id}: {protocol.value} supported={probe.supported} "
                f"update_capable={probe.update_capable} latency={probe.latency_ms}ms"
            )
            probes.append(probe)
        return probes

    @staticmethod
    def candidates(probes: List[ProtocolProbe], preferred: Optional[str] = None) -> List[ManagementProtocol]:
        """
        Protocols able to flash firmware, in the order they should be tried.

        The preferred protocol leads when it is supported; the rest follow
        by priority.
        """
        usable = sorted(
            (p for p in probes if p.supported and p.update_capable),
            key=lambda p: p.priority,
        )
        ordered = [ManagementProtocol.parse(p.protocol) for p in usable]
        if preferred:
            wanted = ManagementProtocol.parse(preferred)
            if wanted in ordered:
                ordered.remove(wanted)
                ordered.insert(0, wanted)
        return ordered

    def select(self, probes: List[ProtocolProbe], preferred: Optional[str] = None) -> Optional[ManagementProtocol]:
        """Preferred protocol if supported, else the highest-priority supported one."""
        ordered = self.candidates(probes, preferred)
        return ordered[0] if ordered else None

    def create_job(self, host_id: str, steps: List[UpdateStep], plan_id: str = "") -> UpdateJob:
        """Create and persist a queued job for a host's update sequence."""
        job = UpdateJob(
            id=f"job-{uuid.uuid4()}",
            host_id=host_id,
            plan_id=plan_id,
            component_type=steps[0].component_type if steps else "",
            total_steps=len(steps),
        )
        self.state_machine.touch_job(job)
        return job

    def _estimate_completion(self, steps: List[UpdateStep], index: int) -> str:
        remaining = sum(step.duration_minutes for step in steps[index:])
        return (self.clock() + timedelta(minutes=remaining)).isoformat()

    def _transition(self, job: UpdateJob, steps: List[UpdateStep], index: int, status: str,
                    reason: str = "") -> None:
        job.telemetry["estimated_completion"] = self._estimate_completion(steps, index)
        self.state_machine.transition_job(
            job, status, reason, progress=step_progress(steps, index, status)
        )

    def _is_cancelled(self, job: UpdateJob) -> bool:
        with self.state_machine.lock:
            return job.status == JobStatus.CANCELLED.value

    def _fail(self, job: UpdateJob, reason: str) -> UpdateJob:
        with self.state_machine.lock:
            if job.status != JobStatus.CANCELLED.value:
                self.state_machine.transition_job(job, JobStatus.FAILED.value, reason)
        return job

    def _stage_and_apply(self, job: UpdateJob, client: ProtocolClient, target: ManagementTarget,
                         steps: List[UpdateStep], index: int) -> None:
        step = steps[index]
        if job.status != JobStatus.TRANSFERRING.value:
            self._transition(job, steps, index, JobStatus.TRANSFERRING.value,
                             f"step {step.step_number}: {step.component_type} {step.to_version}")
        handle = client.transfer(target, step)

        with self.state_machine.lock:
            if job.status == JobStatus.CANCELLED.value:
                cancelled = True
            else:
                cancelled = False
                self._transition(job, steps, index, JobStatus.APPLYING.value, f"staged as {handle}")
        if cancelled:
            try:
                client.abort(target, handle)
            except ProtocolExecutionError as e:
                self.logger.warning(f"Job {job.id}: could not discard staged update {handle}: {e}")
            raise _StepCancelled()

        client.apply(target, step, handle)

    def _run_step(self, job: UpdateJob, target: ManagementTarget, steps: List[UpdateStep], index: int,
                  protocols: List[ManagementProtocol], enable_fallback: bool) -> None:
        """Run one step; returns with the job in ``verifying`` or raises."""
        step = steps[index]
        job.current_step = index + 1
        job.component_type = step.component_type

        while True:
            client = self.clients[ManagementProtocol.parse(job.protocol)]
            try:
                self._stage_and_apply(job, client, target, steps, index)
                break
            except ProtocolExecutionError as e:
                if self._is_cancelled(job):
                    raise _StepCancelled() from e
                current = ManagementProtocol.parse(job.protocol)
                remaining = protocols[protocols.index(current) + 1:]
                if not (e.recoverable and enable_fallback and remaining):
                    raise
                record = FallbackRecord(
                    from_protocol=current.value, to_protocol=remaining[0].value, reason=str(e)
                )
                job.fallback_history.append(record)
                job.protocol = remaining[0].value
                job.telemetry["protocol_latency_ms"] = job.telemetry.get("probe_latency_ms", {}).get(job.protocol)
                log_with_context(
                    self.logger, "warning",
                    f"Job {job.id}: falling back from {record.from_protocol} to {record.to_protocol}",
                    host_id=job.host_id, plan_id=job.plan_id or None, job_id=job.id,
                    protocol=record.to_protocol, details={"reason": record.reason},
                )
                if job.status == JobStatus.APPLYING.value:
                    self._transition(job, steps, index, JobStatus.TRANSFERRING.value,
                                     f"retrying step {step.step_number} over {job.protocol}")
                else:
                    self.state_machine.touch_job(job)

        if step.requires_reboot:
            self._transition(job, steps, index, JobStatus.REBOOTING.value)
            client.reboot(target)

        self._transition(job, steps, index, JobStatus.VERIFYING.value)
        installed = client.get_firmware_version(target, step.component_type)
        if installed != step.to_version:
            raise client.error(
                "verify",
                f"{step.component_type} reports {installed or 'no version'}, expected {step.to_version}",
                recoverable=False,
            )
        if step.validation_required and not client.check_health(target):
            raise client.error("verify", f"host unhealthy after {step.component_type} update",
                               recoverable=False)

    def _health_gate(self, job: UpdateJob, target: ManagementTarget) -> Optional[str]:
        """Run the selected client's pre-flight checks; returns why the host is blocked, if it is."""
        client = self.clients[ManagementProtocol.parse(job.protocol)]
        try:
            gate = client.preflight(target)
        except ProtocolExecutionError as e:
            return f"hardware health gate failed: {e}"

        job.telemetry["health_gate"] = gate.to_dict()
        for check in gate.warnings:
            self.logger.warning(f"{job.host_id}: {check.message}")
        if gate.passed:
            return None
        return f"hardware health gate blocked the update: {gate.summary()}"

    def run_job(
        self,
        job: UpdateJob,
        target: ManagementTarget,
        steps: List[UpdateStep],
        preferred_protocol: Optional[str] = None,
        enable_fallback: bool = True,
        health_gate: bool = True,
    ) -> UpdateJob:
        """
        Run a queued job to a terminal status.

        Args:
            job: Queued job
            target: Host management endpoint
            steps: Host update sequence, in order
            preferred_protocol: Protocol to try first when supported
            enable_fallback: Retry recoverable failures on the next protocol
            health_gate: Check hardware health before the first transfer

        Returns:
            The job, in ``completed``, ``failed`` or ``cancelled`` status
        """
        with self._active_lock:
            self._active_jobs[job.id] = job
        try:
            return self._run_job(job, target, steps, preferred_protocol, enable_fallback, health_gate)
        finally:
            with self._active_lock:
                self._active_jobs.pop(job.id, None)

    def _run_job(self, job, target, steps, preferred_protocol, enable_fallback, health_gate) -> UpdateJob:
        if self._is_cancelled(job):
            return job

        probes = self.detect(target)
        job.telemetry["probes"] = [p.to_dict() for p in probes]
        job.telemetry["probe_latency_ms"] = {p.protocol: p.latency_ms for p in probes if p.supported}
        protocols = self.candidates(probes, preferred_protocol)
        if not protocols:
            return self._fail(job, f"no supported update protocol on {target.address}")

        job.protocol = protocols[0].value
        job.telemetry["protocol_latency_ms"] = job.telemetry["probe_latency_ms"].get(job.protocol)
        if not enable_fallback:
            protocols = protocols[:1]

        if health_gate:
            blocked = self._health_gate(job, target)
            if blocked:
                return self._fail(job, blocked)

        log_with_context(
            self.logger, "info",
            f"Job {job.id}: updating {job.host_id} over {job.protocol} ({len(steps)} step(s))",
            host_id=job.host_id, plan_id=job.plan_id or None, job_id=job.id, protocol=job.protocol,
        )

        for index in range(len(steps)):
            try:
                self._run_step(job, target, steps, index, protocols, enable_fallback)
            except _StepCancelled:
                log_with_context(
                    self.logger, "info", f"Job {job.id} cancelled; staged firmware discarded",
                    host_id=job.host_id, job_id=job.id, protocol=job.protocol,
                )
                return job
            except ProtocolExecutionError as e:
                return self._fail(job, str(e))
            except InvalidTransitionError:
                # Cancelled between the step's status checks
                if self._is_cancelled(job):
                    return job
                raise

        self._transition(job, steps, len(steps), JobStatus.COMPLETED.value)
        return job

    def active_job(self, job_id: str) -> Optional[UpdateJob]:
        """Live record of a running job, if any."""
        with self._active_lock:
            return self._active_jobs.get(job_id)

    def cancel_job(self, job: UpdateJob, reason: str = "cancelled by operator") -> UpdateJob:
        """
        Cancel a job before its first step starts flashing.

        Args:
            job: Job to cancel (the live record when it is running)
            reason: Why the job is cancelled

        Returns:
            The cancelled job

        Raises:
            CancellationError: If any step reached ``applying`` or the job is terminal
        """
        job = self.active_job(job.id) or job
        with self.state_machine.lock:
            if job.status not in CANCELLABLE_JOB_STATUSES or job.flash_started:
                if job.is_terminal:
                    detail = "job already finished"
                elif job.flash_started:
                    detail = "an earlier step already flashed firmware; the sequence must finish"
                else:
                    detail = "interrupting a firmware flash can leave the hardware unusable"
                raise CancellationError(job.id, job.status, detail)
            self.state_machine.transition_job(job, JobStatus.CANCELLED.value, reason)
        return job
