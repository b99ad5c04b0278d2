"""Data models for gap analysis, planning and execution tracking."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional, Tuple
from enum import Enum

from firmware_rollout.exceptions import ConfigurationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current time as an ISO-8601 string."""
    return utc_now().isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Criticality(Enum):
    """Firmware criticality enumeration."""
    CRITICAL = "critical"
    IMPORTANT = "important"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"

    @property
    def rank(self) -> int:
        """Sort rank, most critical first."""
        return list(Criticality).index(self)


class CompatibilityRisk(Enum):
    """Host compatibility risk enumeration."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort rank, lowest risk first."""
        return list(CompatibilityRisk).index(self)


class Strategy(Enum):
    """Orchestration strategy enumeration."""
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    MAINTENANCE_WINDOW = "maintenance_window"
    SMART_ROLLING = "smart_rolling"


class RiskTolerance(Enum):
    """Operator risk tolerance enumeration."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class PlanStatus(Enum):
    """Plan status enumeration."""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(Enum):
    """Update job status enumeration."""
    QUEUED = "queued"
    TRANSFERRING = "transferring"
    APPLYING = "applying"
    REBOOTING = "rebooting"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PLAN_STATUSES = {
    PlanStatus.COMPLETED.value,
    PlanStatus.FAILED.value,
    PlanStatus.CANCELLED.value,
}

TERMINAL_JOB_STATUSES = {
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
}


class ManagementProtocol(Enum):
    """Out-of-band management protocols, declared in preference order."""
    REDFISH = "redfish"
    WSMAN = "wsman"
    RACADM = "racadm"
    IPMI = "ipmi"
    SSH = "ssh"

    @property
    def priority(self) -> int:
        """Priority (1 = most preferred)."""
        return list(ManagementProtocol).index(self) + 1

    @classmethod
    def ordered(cls) -> List["ManagementProtocol"]:
        """All protocols, most preferred first."""
        return sorted(cls, key=lambda p: p.priority)

    @classmethod
    def parse(cls, value: str) -> "ManagementProtocol":
        """Parse a protocol name case-insensitively."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown management protocol: {value}") from None


@dataclass
class ErrorRecord:
    """Error record."""
    timestamp: str
    phase: str
    message: str
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class HostRecord:
    """Host as known to the inventory."""
    host_id: str
    hostname: str
    model: str
    service_tag: str = ""
    cluster_name: Optional[str] = None
    management_address: str = ""
    current_versions: Dict[str, str] = field(default_factory=dict)
    credentials_ref: str = ""
    protocol_hints: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostRecord":
        """Create from inventory dictionary."""
        return cls(
            host_id=str(data["host_id"]),
            hostname=data.get("hostname", data["host_id"]),
            model=data.get("model", ""),
            service_tag=data.get("service_tag", ""),
            cluster_name=data.get("cluster_name") or None,
            management_address=data.get("management_address", ""),
            current_versions=dict(data.get("current_versions", {})),
            credentials_ref=data.get("credentials_ref", ""),
            protocol_hints=list(data.get("protocol_hints", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class Credentials:
    """Secrets used to reach a host's management controller."""
    username: str
    password: str = field(default="", repr=False)
    private_key_path: str = ""
    port: Optional[int] = None


@dataclass
class CatalogTarget:
    """Catalog answer for one (model, component) pair."""
    component_type: str
    version: str
    path: List[str]
    criticality: str
    duration_minutes: int
    requires_reboot: bool
    update_sequence_order: int = 0
    image_uris: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FirmwareComponent:
    """Per-component firmware gap, immutable for one analysis run."""
    component_type: str
    current_version: str
    target_version: str
    criticality: str
    requires_reboot: bool
    intermediate_versions: Tuple[str, ...] = ()
    estimated_duration_minutes: int = 0
    update_sequence_order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result["intermediate_versions"] = list(self.intermediate_versions)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FirmwareComponent":
        """Create from dictionary."""
        values = dict(data)
        values["intermediate_versions"] = tuple(values.get("intermediate_versions", ()))
        return cls(**values)


@dataclass
class UpdateStep:
    """One host-scoped firmware flash, executed in step_number order."""
    step_number: int
    component_type: str
    from_version: str
    to_version: str
    duration_minutes: int
    requires_reboot: bool
    validation_required: bool
    image_uri: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateStep":
        """Create from dictionary."""
        return cls(**data)


@dataclass
class HostFirmwareGap:
    """Result of gap analysis for one host."""
    host_id: str
    hostname: str
    model: str
    service_tag: str
    cluster_name: Optional[str]
    compatibility_risk: str
    total_update_time_minutes: int
    components: List[FirmwareComponent] = field(default_factory=list)
    update_sequence: List[UpdateStep] = field(default_factory=list)
    requires_multi_step: bool = False
    management_address: str = ""
    analysis_errors: List[ErrorRecord] = field(default_factory=list)
    current_versions: Dict[str, str] = field(default_factory=dict)
    analyzed_at: str = field(default_factory=utc_now_iso)

    @property
    def needs_update(self) -> bool:
        """Whether any step is required."""
        return bool(self.update_sequence)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host_id": self.host_id,
            "hostname": self.hostname,
            "model": self.model,
            "service_tag": self.service_tag,
            "cluster_name": self.cluster_name,
            "compatibility_risk": self.compatibility_risk,
            "total_update_time_minutes": self.total_update_time_minutes,
            "components": [c.to_dict() for c in self.components],
            "update_sequence": [s.to_dict() for s in self.update_sequence],
            "requires_multi_step": self.requires_multi_step,
            "management_address": self.management_address,
            "analysis_errors": [e.to_dict() for e in self.analysis_errors],
            "current_versions": dict(self.current_versions),
            "analyzed_at": self.analyzed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostFirmwareGap":
        """Create from dictionary."""
        return cls(
            host_id=data["host_id"],
            hostname=data.get("hostname", data["host_id"]),
            model=data.get("model", ""),
            service_tag=data.get("service_tag", ""),
            cluster_name=data.get("cluster_name"),
            compatibility_risk=data.get("compatibility_risk", CompatibilityRisk.LOW.value),
            total_update_time_minutes=data.get("total_update_time_minutes", 0),
            components=[FirmwareComponent.from_dict(c) for c in data.get("components", [])],
            update_sequence=[UpdateStep.from_dict(s) for s in data.get("update_sequence", [])],
            requires_multi_step=data.get("requires_multi_step", False),
            management_address=data.get("management_address", ""),
            analysis_errors=[ErrorRecord(**e) for e in data.get("analysis_errors", [])],
            current_versions=dict(data.get("current_versions", {})),
            analyzed_at=data.get("analyzed_at", ""),
        )


@dataclass
class FirmwareVariation:
    """Distinct installed versions of one component across a cluster."""
    versions: List[str] = field(default_factory=list)
    host_count_per_version: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class CompatibilityWindow:
    """Versions of one component that coexist while a cluster is rolled."""
    component_type: str
    coexisting_versions: List[str] = field(default_factory=list)
    target_versions: List[str] = field(default_factory=list)
    risky_combinations: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class ClusterCompatibilityAnalysis:
    """Rolling-update feasibility for one cluster."""
    cluster_name: str
    total_hosts: int
    min_active_hosts: int
    max_simultaneous_updates: int
    estimated_cluster_update_duration_hours: int
    firmware_variations: Dict[str, FirmwareVariation] = field(default_factory=dict)
    rolling_update_feasible: bool = True
    compatibility_windows: List[CompatibilityWindow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_risky_combinations(self) -> bool:
        """Whether the compatibility matrix flagged any coexisting versions."""
        return any(w.risky_combinations for w in self.compatibility_windows)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "cluster_name": self.cluster_name,
            "total_hosts": self.total_hosts,
            "min_active_hosts": self.min_active_hosts,
            "max_simultaneous_updates": self.max_simultaneous_updates,
            "estimated_cluster_update_duration_hours": self.estimated_cluster_update_duration_hours,
            "firmware_variations": {k: v.to_dict() for k, v in self.firmware_variations.items()},
            "rolling_update_feasible": self.rolling_update_feasible,
            "compatibility_windows": [w.to_dict() for w in self.compatibility_windows],
            "warnings": list(self.warnings),
        }


@dataclass
class OrchestrationConfig:
    """Operator-supplied orchestration policy."""
    strategy: str = Strategy.IMMEDIATE.value
    risk_tolerance: str = RiskTolerance.BALANCED.value
    max_parallel_clusters: int = 1
    max_parallel_hosts_per_cluster: int = 1
    require_manual_approval: bool = True
    respect_maintenance_windows: bool = False
    scheduled_start: Optional[str] = None
    compatibility_validation: bool = True
    rollback_on_failure: bool = True
    preferred_protocol: Optional[str] = None
    enable_fallback: bool = True
    hardware_health_gate: bool = True

    def validate(self) -> None:
        """
        Check the policy is internally consistent.

        Raises:
            ConfigurationError: If a field is out of range or unknown
        """
        for name, enum in (("strategy", Strategy), ("risk_tolerance", RiskTolerance)):
            value = getattr(self, name)
            if value not in {member.value for member in enum}:
                raise ConfigurationError(f"Unknown {name}: {value}")
        if self.max_parallel_clusters < 1:
            raise ConfigurationError("max_parallel_clusters must be at least 1")
        if self.max_parallel_hosts_per_cluster < 1:
            raise ConfigurationError("max_parallel_hosts_per_cluster must be at least 1")
        if self.strategy == Strategy.SCHEDULED.value and not self.scheduled_start:
            raise ConfigurationError("The scheduled strategy requires scheduled_start")
        if self.scheduled_start:
            try:
                parse_timestamp(self.scheduled_start)
            except ValueError:
                raise ConfigurationError(f"Invalid scheduled_start: {self.scheduled_start}") from None
        if self.preferred_protocol:
            try:
                ManagementProtocol.parse(self.preferred_protocol)
            except ValueError as e:
                raise ConfigurationError(str(e)) from None

    @property
    def respects_windows(self) -> bool:
        """Whether phases must start inside maintenance windows."""
        return self.respect_maintenance_windows or self.strategy == Strategy.MAINTENANCE_WINDOW.value

    @property
    def halts_on_failure(self) -> bool:
        """Whether an execution failure stops the plan."""
        return self.rollback_on_failure or self.risk_tolerance == RiskTolerance.CONSERVATIVE.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestrationConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class MaintenanceWindow:
    """Recurring time range during which disruptive work is permitted."""
    cluster_name: str
    start: str
    duration_minutes: int
    recurrence_days: int = 0

    def _occurrence_start(self, at: datetime) -> Optional[datetime]:
        """Start of the latest occurrence beginning at or before ``at``."""
        start = parse_timestamp(self.start)
        if at < start:
            return None
        if not self.recurrence_days:
            return start
        period = timedelta(days=self.recurrence_days)
        return start + ((at - start) // period) * period

    def contains(self, at: datetime) -> bool:
        """Whether ``at`` falls inside an occurrence of the window."""
        occurrence = self._occurrence_start(at)
        if occurrence is None:
            return False
        return at < occurrence + timedelta(minutes=self.duration_minutes)

    def next_occurrence(self, after: datetime) -> Optional[datetime]:
        """First occurrence starting after ``after``, or None if the window never reopens."""
        start = parse_timestamp(self.start)
        if after < start:
            return start
        if not self.recurrence_days:
            return None
        return self._occurrence_start(after) + timedelta(days=self.recurrence_days)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class ExecutionPhase:
    """One cluster (or standalone host) worth of work within a plan."""
    phase_number: int
    cluster_name: str
    hosts: List[HostFirmwareGap]
    estimated_duration_hours: int
    parallel_execution: bool
    hosts_per_batch: int = 1
    min_active_hosts: int = 0
    total_hosts: int = 0
    standalone: bool = False
    scheduled_start: str = ""
    deferred_to_window: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase_number": self.phase_number,
            "cluster_name": self.cluster_name,
            "hosts": [h.to_dict() for h in self.hosts],
            "estimated_duration_hours": self.estimated_duration_hours,
            "parallel_execution": self.parallel_execution,
            "hosts_per_batch": self.hosts_per_batch,
            "min_active_hosts": self.min_active_hosts,
            "total_hosts": self.total_hosts,
            "standalone": self.standalone,
            "scheduled_start": self.scheduled_start,
            "deferred_to_window": self.deferred_to_window,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionPhase":
        """Create from dictionary."""
        return cls(
            phase_number=data["phase_number"],
            cluster_name=data["cluster_name"],
            hosts=[HostFirmwareGap.from_dict(h) for h in data.get("hosts", [])],
            estimated_duration_hours=data.get("estimated_duration_hours", 0),
            parallel_execution=data.get("parallel_execution", False),
            hosts_per_batch=data.get("hosts_per_batch", 1),
            min_active_hosts=data.get("min_active_hosts", 0),
            total_hosts=data.get("total_hosts", 0),
            standalone=data.get("standalone", False),
            scheduled_start=data.get("scheduled_start", ""),
            deferred_to_window=data.get("deferred_to_window", False),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class PhaseProgress:
    """Persisted executor position within a phase."""
    status: str = "pending"
    last_completed_host_index: int = -1
    failed_hosts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class HostFailure:
    """Execution failure recorded against a host."""
    host_id: str
    phase_number: int
    reason: str
    component_type: str = ""
    critical: bool = False
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class StatusChange:
    """One validated state transition."""
    from_status: str
    to_status: str
    timestamp: str = field(default_factory=utc_now_iso)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class OrchestrationPlan:
    """Phased execution plan."""
    id: str
    config: OrchestrationConfig
    phases: List[ExecutionPhase]
    total_duration_hours: int
    status: str = PlanStatus.PENDING_APPROVAL.value
    current_phase: int = 0
    retry_count: int = 0
    rollback_plan: List[Dict[str, Any]] = field(default_factory=list)
    failure_reason: str = ""
    phase_progress: Dict[str, PhaseProgress] = field(default_factory=dict)
    failures: List[HostFailure] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    job_ids: Dict[str, str] = field(default_factory=dict)
    status_history: List[StatusChange] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    approved_at: str = ""
    started_at: str = ""
    completed_at: str = ""
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        """Whether the plan reached a terminal status."""
        return self.status in TERMINAL_PLAN_STATUSES

    def progress_for(self, phase_number: int) -> PhaseProgress:
        """Get (creating if needed) the progress record of a phase."""
        key = str(phase_number)
        if key not in self.phase_progress:
            self.phase_progress[key] = PhaseProgress()
        return self.phase_progress[key]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "config": self.config.to_dict(),
            "phases": [p.to_dict() for p in self.phases],
            "total_duration_hours": self.total_duration_hours,
            "status": self.status,
            "current_phase": self.current_phase,
            "retry_count": self.retry_count,
            "rollback_plan": list(self.rollback_plan),
            "failure_reason": self.failure_reason,
            "phase_progress": {k: v.to_dict() for k, v in self.phase_progress.items()},
            "failures": [f.to_dict() for f in self.failures],
            "alerts": list(self.alerts),
            "warnings": list(self.warnings),
            "job_ids": dict(self.job_ids),
            "status_history": [s.to_dict() for s in self.status_history],
            "created_at": self.created_at,
            "approved_at": self.approved_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestrationPlan":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            config=OrchestrationConfig.from_dict(data.get("config", {})),
            phases=[ExecutionPhase.from_dict(p) for p in data.get("phases", [])],
            total_duration_hours=data.get("total_duration_hours", 0),
            status=data.get("status", PlanStatus.PENDING_APPROVAL.value),
            current_phase=data.get("current_phase", 0),
            retry_count=data.get("retry_count", 0),
            rollback_plan=list(data.get("rollback_plan", [])),
            failure_reason=data.get("failure_reason", ""),
            phase_progress={
                k: PhaseProgress(**v) for k, v in data.get("phase_progress", {}).items()
            },
            failures=[HostFailure(**f) for f in data.get("failures", [])],
            alerts=list(data.get("alerts", [])),
            warnings=list(data.get("warnings", [])),
            job_ids=dict(data.get("job_ids", {})),
            status_history=[StatusChange(**s) for s in data.get("status_history", [])],
            created_at=data.get("created_at", ""),
            approved_at=data.get("approved_at", ""),
            started_at=data.get("started_at", ""),
            completed_at=data.get("completed_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class FallbackRecord:
    """Protocol switch made after a recoverable failure."""
    from_protocol: str
    to_protocol: str
    reason: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


class HealthStatus(Enum):
    """Outcome of one hardware health check."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"

    @classmethod
    def from_redfish(cls, health: Optional[str]) -> "HealthStatus":
        """Map a Redfish ``Status.Health`` value; anything but OK/Warning is critical."""
        if health == "OK":
            return cls.OK
        if health == "Warning":
            return cls.WARNING
        return cls.CRITICAL


@dataclass
class HealthCheck:
    """One hardware check run before a host is updated."""
    category: str
    component: str
    status: str
    message: str
    blocking: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class HealthGateResult:
    """
    Pre-flight hardware health of a host.

    The gate passes unless a check is both critical and blocking.
    """
    checks: List[HealthCheck] = field(default_factory=list)

    @property
    def blocking_issues(self) -> List[HealthCheck]:
        """Critical checks that stop the update."""
        return [c for c in self.checks if c.blocking and c.status == HealthStatus.CRITICAL.value]

    @property
    def warnings(self) -> List[HealthCheck]:
        return [c for c in self.checks if c.status == HealthStatus.WARNING.value]

    @property
    def passed(self) -> bool:
        """Whether the host may be updated."""
        return not self.blocking_issues

    def add(self, category: str, component: str, health: Optional[str], message: str,
            blocking: Optional[bool] = None) -> None:
        """Record a check from a Redfish health value; Critical blocks unless told otherwise."""
        status = HealthStatus.from_redfish(health)
        if blocking is None:
            blocking = health == "Critical"
        self.checks.append(HealthCheck(category, component, status.value, message, blocking))

    def summary(self) -> str:
        """Blocking issues as one line."""
        return "; ".join(c.message for c in self.blocking_issues)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "passed": self.passed,
            "checks": [c.to_dict() for c in self.checks],
            "blocking_issues": len(self.blocking_issues),
            "warnings": len(self.warnings),
        }


@dataclass
class ProtocolProbe:
    """Result of probing one management protocol on a host."""
    protocol: str
    supported: bool
    priority: int
    latency_ms: float = 0.0
    update_capable: bool = True
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class UpdateProgress:
    """Read model of a job's progress."""
    job_id: str
    host_id: str
    status: str
    progress: int
    protocol: str
    component_type: str
    current_step: int
    total_steps: int
    estimated_completion: str = ""
    fallback_count: int = 0
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class UpdateJob:
    """Firmware update of one host for one execution attempt."""
    id: str
    host_id: str
    plan_id: str = ""
    component_type: str = ""
    protocol: str = ""
    status: str = JobStatus.QUEUED.value
    progress: int = 0
    current_step: int = 0
    total_steps: int = 0
    fallback_history: List[FallbackRecord] = field(default_factory=list)
    telemetry: Dict[str, Any] = field(default_factory=dict)
    error: str = ""
    status_history: List[StatusChange] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached a terminal status."""
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def flash_started(self) -> bool:
        """Whether any step of the job has reached ``applying``."""
        return any(c.to_status == JobStatus.APPLYING.value for c in self.status_history)

    def to_progress(self) -> UpdateProgress:
        """Build the progress read model."""
        return UpdateProgress(
            job_id=self.id,
            host_id=self.host_id,
            status=self.status,
            progress=self.progress,
            protocol=self.protocol,
            component_type=self.component_type,
            current_step=self.current_step,
            total_steps=self.total_steps,
            estimated_completion=self.telemetry.get("estimated_completion", ""),
            fallback_count=len(self.fallback_history),
            error=self.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result["fallback_history"] = [f.to_dict() for f in self.fallback_history]
        result["status_history"] = [s.to_dict() for s in self.status_history]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateJob":
        """Create from dictionary."""
        values = dict(data)
        values["fallback_history"] = [FallbackRecord(**f) for f in data.get("fallback_history", [])]
        values["status_history"] = [StatusChange(**s) for s in data.get("status_history", [])]
        return cls(**values)


@dataclass
class ClusterCapacity:
    """Virtualization manager view of a cluster."""
    active: int
    total: int
    drs_enabled: bool = False


@dataclass
class DaemonStatus:
    """Daemon status."""
    running: bool
    workers: int
    running_plans: int = 0
    started_at: str = ""
    last_updated: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class WorkerStatus:
    """Worker status."""
    worker_id: int
    status: str  # "idle", "busy", "error"
    current_work_id: str = ""
    current_label: str = ""
    last_updated: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
