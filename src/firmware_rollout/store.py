"""Persistent plan and job records with append-only execution logs."""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from firmware_rollout import constants
from firmware_rollout.exceptions import JobNotFoundError, PlanNotFoundError
from firmware_rollout.models import OrchestrationPlan, UpdateJob, utc_now_iso
from firmware_rollout.utils.file_ops import (
    append_json_line, atomic_write_json, read_json, read_json_lines
)


class StateStore:
    """File-backed store: one JSON document per plan/job, one JSON-lines log per plan."""

    def __init__(self, work_dir: Path):
        """
        Initialize store.

        Args:
            work_dir: Work directory holding ``plans/``, ``jobs/`` and ``logs/execution/``
        """
        self.work_dir = Path(work_dir)
        self.plans_dir = self.work_dir / constants.DIR_PLANS
        self.jobs_dir = self.work_dir / constants.DIR_JOBS
        self.logs_dir = self.work_dir / constants.DIR_LOGS_EXECUTION
        for directory in (self.plans_dir, self.jobs_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _plan_file(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.json"

    def _job_file(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _log_file(self, plan_id: str) -> Path:
        return self.logs_dir / f"{plan_id}.jsonl"

    def save_plan(self, plan: OrchestrationPlan) -> None:
        """Persist a plan."""
        with self._lock:
            atomic_write_json(self._plan_file(plan.id), plan.to_dict())

    def load_plan(self, plan_id: str) -> OrchestrationPlan:
        """
        Load a plan.

        Raises:
            PlanNotFoundError: If no such plan was saved
        """
        try:
            return OrchestrationPlan.from_dict(read_json(self._plan_file(plan_id)))
        except FileNotFoundError:
            raise PlanNotFoundError(plan_id) from None

    def list_plans(self, status: Optional[str] = None) -> List[OrchestrationPlan]:
        """All saved plans, oldest first, optionally filtered by status."""
        plans = [
            OrchestrationPlan.from_dict(read_json(path))
            for path in sorted(self.plans_dir.glob("*.json"))
        ]
        if status is not None:
            plans = [p for p in plans if p.status == status]
        return sorted(plans, key=lambda p: p.created_at)

    def save_job(self, job: UpdateJob) -> None:
        """Persist a job."""
        with self._lock:
            atomic_write_json(self._job_file(job.id), job.to_dict())

    def load_job(self, job_id: str) -> UpdateJob:
        """
        Load a job.

        Raises:
            JobNotFoundError: If no such job was saved
        """
        try:
            return UpdateJob.from_dict(read_json(self._job_file(job_id)))
        except FileNotFoundError:
            raise JobNotFoundError(job_id) from None

    def list_jobs(self, plan_id: Optional[str] = None) -> List[UpdateJob]:
        """Saved jobs, optionally restricted to one plan."""
        jobs = [UpdateJob.from_dict(read_json(path)) for path in sorted(self.jobs_dir.glob("*.json"))]
        if plan_id is not None:
            jobs = [j for j in jobs if j.plan_id == plan_id]
        return sorted(jobs, key=lambda j: j.created_at)

    def append_log(self, plan_id: str, event: str, **fields: Any) -> None:
        """
        Append an audit entry to a plan's execution log.

        Args:
            plan_id: Plan identifier
            event: Event name (plan_status, job_status, host_failure, ...)
            **fields: Event payload
        """
        entry: Dict[str, Any] = {"timestamp": utc_now_iso(), "event": event}
        entry.update(fields)
        append_json_line(self._log_file(plan_id), entry)

    def read_log(self, plan_id: str) -> List[Dict[str, Any]]:
        """Execution log entries of a plan, oldest first."""
        return read_json_lines(self._log_file(plan_id))
