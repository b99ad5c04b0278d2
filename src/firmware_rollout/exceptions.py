"""Custom exceptions for the firmware rollout engine."""

from typing import Optional


class FirmwareRolloutError(Exception):
    """Base exception for all firmware rollout errors."""
    pass


class ConfigurationError(FirmwareRolloutError):
    """Exception raised for configuration errors."""
    pass


class DiscoveryError(FirmwareRolloutError):
    """Exception raised when a host or its management interface cannot be discovered."""

    def __init__(self, host_id: str, reason: str):
        """
        Initialize discovery error.

        Args:
            host_id: Host identifier
            reason: Error reason
        """
        self.host_id = host_id
        self.reason = reason
        message = f"Discovery failed for host {host_id}: {reason}"
        super().__init__(message)


class CatalogConfigurationError(ConfigurationError):
    """Exception raised when the firmware catalog is malformed (e.g. cyclic version edges)."""

    def __init__(self, model: str, component_type: str, reason: str):
        """
        Initialize catalog configuration error.

        Args:
            model: Server model the entry belongs to
            component_type: Firmware component type
            reason: Error reason
        """
        self.model = model
        self.component_type = component_type
        self.reason = reason
        message = f"Invalid catalog entry for {model}/{component_type}: {reason}"
        super().__init__(message)


class IncompatibleUpdateError(FirmwareRolloutError):
    """Exception raised when no valid version path exists for a component."""

    def __init__(self, component_type: str, current_version: str, target_version: str,
                 host_id: str = ""):
        """
        Initialize incompatible update error.

        Args:
            component_type: Firmware component type
            current_version: Installed version
            target_version: Catalog target version
            host_id: Host identifier (if known)
        """
        self.component_type = component_type
        self.current_version = current_version
        self.target_version = target_version
        self.host_id = host_id

        message = (
            f"No update path for {component_type} "
            f"from {current_version} to {target_version}"
        )
        if host_id:
            message += f" on host {host_id}"
        super().__init__(message)


class CapacityViolationError(FirmwareRolloutError):
    """Exception raised when an update would drop a cluster below its minimum active hosts."""

    def __init__(self, cluster_name: str, active_hosts: int, requested: int,
                 min_active_hosts: int, reason: str = ""):
        """
        Initialize capacity violation error.

        Args:
            cluster_name: Cluster name
            active_hosts: Hosts currently serving workloads
            requested: Hosts requested to leave the cluster
            min_active_hosts: Minimum hosts that must stay active
            reason: Optional extra detail
        """
        self.cluster_name = cluster_name
        self.active_hosts = active_hosts
        self.requested = requested
        self.min_active_hosts = min_active_hosts

        message = (
            f"Cluster {cluster_name} cannot release {requested} host(s): "
            f"{active_hosts} active, {min_active_hosts} must remain active"
        )
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ApprovalRequiredError(FirmwareRolloutError):
    """Exception raised when a plan awaiting manual approval is executed."""

    def __init__(self, plan_id: str):
        """
        Initialize approval required error.

        Args:
            plan_id: Plan identifier
        """
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} requires manual approval before execution")


class MaintenanceWindowViolationError(FirmwareRolloutError):
    """Exception raised when disruptive work would start outside a maintenance window."""

    def __init__(self, cluster_name: str, reason: str):
        """
        Initialize maintenance window violation error.

        Args:
            cluster_name: Cluster name
            reason: Error reason
        """
        self.cluster_name = cluster_name
        self.reason = reason
        super().__init__(f"Maintenance window violation for {cluster_name}: {reason}")


class ProtocolExecutionError(FirmwareRolloutError):
    """Exception raised when a management protocol operation fails."""

    def __init__(self, protocol: str, operation: str, reason: str, recoverable: bool = True):
        """
        Initialize protocol execution error.

        Args:
            protocol: Management protocol name
            operation: Operation that failed (probe, transfer, apply, ...)
            reason: Error reason
            recoverable: Whether another protocol may succeed where this one failed
        """
        self.protocol = protocol
        self.operation = operation
        self.reason = reason
        self.recoverable = recoverable
        super().__init__(f"{protocol} {operation} failed: {reason}")


class ProtocolTimeoutError(ProtocolExecutionError):
    """Exception raised when a management protocol operation times out."""

    def __init__(self, protocol: str, operation: str, timeout: float):
        """
        Initialize protocol timeout error.

        Args:
            protocol: Management protocol name
            operation: Operation that timed out
            timeout: Timeout in seconds
        """
        self.timeout = timeout
        super().__init__(protocol, operation, f"timed out after {timeout:.0f}s", recoverable=True)


class RollbackError(FirmwareRolloutError):
    """Exception raised when a host cannot be returned to service after a failure."""

    def __init__(self, host_id: str, reason: str):
        """
        Initialize rollback error.

        Args:
            host_id: Host identifier
            reason: Error reason
        """
        self.host_id = host_id
        self.reason = reason
        super().__init__(f"Rollback failed for host {host_id}: {reason}")


class EvacuationError(FirmwareRolloutError):
    """Exception raised when a host cannot be evacuated for maintenance."""

    def __init__(self, host_id: str, reason: str):
        """
        Initialize evacuation error.

        Args:
            host_id: Host identifier
            reason: Error reason
        """
        self.host_id = host_id
        self.reason = reason
        super().__init__(f"Cannot evacuate host {host_id}: {reason}")


class InvalidTransitionError(FirmwareRolloutError):
    """Exception raised for an illegal plan or job state transition."""

    def __init__(self, record_id: str, current: str, requested: str):
        """
        Initialize invalid transition error.

        Args:
            record_id: Plan or job identifier
            current: Current state
            requested: Requested state
        """
        self.record_id = record_id
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal transition for {record_id}: {current} -> {requested}")


class CancellationError(FirmwareRolloutError):
    """Exception raised when cancellation is rejected."""

    def __init__(self, job_id: str, status: str, reason: Optional[str] = None):
        """
        Initialize cancellation error.

        Args:
            job_id: Job identifier
            status: Job status at the time of the request
            reason: Optional extra detail
        """
        self.job_id = job_id
        self.status = status
        message = f"Cannot cancel job {job_id} while {status}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class PlanNotFoundError(FirmwareRolloutError):
    """Exception raised when a plan is not found."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan not found: {plan_id}")


class JobNotFoundError(FirmwareRolloutError):
    """Exception raised when a job is not found."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
