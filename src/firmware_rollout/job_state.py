"""Validated lifecycle transitions for plans and update jobs."""

import threading
from typing import Dict, Optional, Set

from firmware_rollout.exceptions import InvalidTransitionError
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import (
    JobStatus, OrchestrationPlan, PlanStatus, StatusChange, UpdateJob, utc_now_iso
)


PLAN_TRANSITIONS: Dict[str, Set[str]] = {
    PlanStatus.PENDING_APPROVAL.value: {PlanStatus.APPROVED.value, PlanStatus.CANCELLED.value},
    PlanStatus.APPROVED.value: {PlanStatus.RUNNING.value, PlanStatus.CANCELLED.value},
    PlanStatus.RUNNING.value: {
        PlanStatus.PAUSED.value,
        PlanStatus.COMPLETED.value,
        PlanStatus.FAILED.value,
        PlanStatus.CANCELLED.value,
    },
    PlanStatus.PAUSED.value: {PlanStatus.RUNNING.value, PlanStatus.CANCELLED.value},
    PlanStatus.COMPLETED.value: set(),
    PlanStatus.FAILED.value: set(),
    PlanStatus.CANCELLED.value: set(),
}

JOB_TRANSITIONS: Dict[str, Set[str]] = {
    JobStatus.QUEUED.value: {
        JobStatus.TRANSFERRING.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value,
    },
    JobStatus.TRANSFERRING.value: {
        JobStatus.APPLYING.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value,
    },
    # Back to transferring when a fallback protocol retries the step
    JobStatus.APPLYING.value: {
        JobStatus.REBOOTING.value, JobStatus.VERIFYING.value,
        JobStatus.TRANSFERRING.value, JobStatus.FAILED.value,
    },
    JobStatus.REBOOTING.value: {JobStatus.VERIFYING.value, JobStatus.FAILED.value},
    # Back to transferring for the next step of the sequence
    JobStatus.VERIFYING.value: {
        JobStatus.TRANSFERRING.value, JobStatus.COMPLETED.value, JobStatus.FAILED.value,
    },
    JobStatus.COMPLETED.value: set(),
    JobStatus.FAILED.value: set(),
    JobStatus.CANCELLED.value: set(),
}

CANCELLABLE_JOB_STATUSES = {JobStatus.QUEUED.value, JobStatus.TRANSFERRING.value}


class JobStateMachine:
    """
    Central gate for plan and job status changes.

    Every change is validated against the transition tables, recorded in
    the record's ``status_history`` and, when a store is attached,
    persisted and appended to the plan's execution log.
    """

    def __init__(self, store=None):
        """
        Initialize state machine.

        Args:
            store: Optional StateStore used to persist records on every transition
        """
        self.store = store
        self.lock = threading.RLock()
        self.logger = get_logger("firmware_rollout.job_state")

    @staticmethod
    def can_transition_plan(current: str, requested: str) -> bool:
        """Whether a plan may move from ``current`` to ``requested``."""
        return requested in PLAN_TRANSITIONS.get(current, set())

    @staticmethod
    def can_transition_job(current: str, requested: str) -> bool:
        """Whether a job may move from ``current`` to ``requested``."""
        return requested in JOB_TRANSITIONS.get(current, set())

    def transition_plan(self, plan: OrchestrationPlan, status: str, reason: str = "") -> None:
        """
        Move a plan to a new status.

        Args:
            plan: Plan to update
            status: Requested PlanStatus value
            reason: Why the status changes

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        with self.lock:
            if not self.can_transition_plan(plan.status, status):
                raise InvalidTransitionError(plan.id, plan.status, status)

            change = StatusChange(from_status=plan.status, to_status=status, reason=reason)
            plan.status = status
            plan.status_history.append(change)
            plan.updated_at = change.timestamp
            if status == PlanStatus.APPROVED.value:
                plan.approved_at = change.timestamp
            elif status == PlanStatus.RUNNING.value and not plan.started_at:
                plan.started_at = change.timestamp
            elif plan.is_terminal:
                plan.completed_at = change.timestamp

            log_with_context(
                self.logger, "info",
                f"Plan {plan.id}: {change.from_status} -> {status}" + (f" ({reason})" if reason else ""),
                plan_id=plan.id,
                phase=status,
            )

            if self.store is not None:
                self.store.save_plan(plan)
                self.store.append_log(plan.id, "plan_status", **change.to_dict())

    def transition_job(self, job: UpdateJob, status: str, reason: str = "",
                       progress: Optional[int] = None) -> None:
        """
        Move a job to a new status.

        Args:
            job: Job to update
            status: Requested JobStatus value
            reason: Why the status changes
            progress: New progress percentage, if it changes

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        with self.lock:
            if not self.can_transition_job(job.status, status) or (
                status == JobStatus.CANCELLED.value and job.flash_started
            ):
                raise InvalidTransitionError(job.id, job.status, status)

            change = StatusChange(from_status=job.status, to_status=status, reason=reason)
            job.status = status
            job.status_history.append(change)
            job.updated_at = change.timestamp
            job.telemetry["last_transition_at"] = change.timestamp
            if progress is not None:
                job.progress = max(0, min(100, progress))
            if status == JobStatus.COMPLETED.value:
                job.progress = 100
            if status == JobStatus.FAILED.value and reason:
                job.error = reason

            log_with_context(
                self.logger, "warning" if status == JobStatus.FAILED.value else "debug",
                f"Job {job.id}: {change.from_status} -> {status}" + (f" ({reason})" if reason else ""),
                host_id=job.host_id,
                plan_id=job.plan_id or None,
                job_id=job.id,
                phase=status,
                protocol=job.protocol or None,
            )

            if self.store is not None:
                self.store.save_job(job)
                if job.plan_id:
                    self.store.append_log(
                        job.plan_id, "job_status",
                        job_id=job.id, host_id=job.host_id, protocol=job.protocol,
                        **change.to_dict(),
                    )

    def touch_job(self, job: UpdateJob) -> None:
        """Persist a job whose progress or telemetry changed without a status change."""
        with self.lock:
            job.updated_at = utc_now_iso()
            if self.store is not None:
                self.store.save_job(job)

    def touch_plan(self, plan: OrchestrationPlan) -> None:
        """Persist a plan whose progress changed without a status change."""
        with self.lock:
            plan.updated_at = utc_now_iso()
            if self.store is not None:
                self.store.save_plan(plan)
