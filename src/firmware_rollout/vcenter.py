"""vCenter REST client used as the virtualization manager."""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from firmware_rollout import constants
from firmware_rollout.exceptions import (
    ConfigurationError, DiscoveryError, EvacuationError, FirmwareRolloutError, RollbackError
)
from firmware_rollout.logging_config import get_logger, log_with_context
from firmware_rollout.models import ClusterCapacity


SESSION_PATH = "/api/session"
CLUSTERS_PATH = "/api/vcenter/cluster"
HOSTS_PATH = "/api/vcenter/host"
VMS_PATH = "/api/vcenter/vm"
TASKS_PATH = "/api/cis/tasks"
SESSION_HEADER = "vmware-api-session-id"

TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = {"FAILED", "CANCELED"}


class VCenterRequestError(FirmwareRolloutError):
    """A vCenter REST call failed."""

    def __init__(self, path: str, reason: str):
        """
        Initialize vCenter request error.

        Args:
            path: Request path
            reason: Failure reason
        """
        self.path = path
        self.reason = reason
        super().__init__(f"vCenter request {path} failed: {reason}")


class VCenterClient:
    """
    Maintenance mode and capacity queries against vCenter.

    Hosts are addressed by the name they are registered with in vCenter.
    Maintenance calls start a vCenter task and block until it finishes.
    """

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        verify_ssl: bool = False,
        timeout: float = 30,
        task_timeout: float = constants.DEFAULT_MAINTENANCE_TIMEOUT,
        poll_interval: float = constants.DEFAULT_TASK_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize vCenter client.

        Args:
            url: vCenter base URL
            username: vCenter user
            password: vCenter password
            verify_ssl: Verify the server certificate
            timeout: Timeout for single requests in seconds
            task_timeout: Maximum time to wait for a maintenance task in seconds
            poll_interval: Delay between task polls in seconds
            sleep: Sleep function (replaced in tests)
        """
        if not url:
            raise ConfigurationError("vcenter.url is not configured")
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.logger = get_logger("firmware_rollout.vcenter")
        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()
        self._host_ids: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config) -> "VCenterClient":
        """Create a client from the ``vcenter`` configuration section."""
        return cls(
            url=config.get("vcenter.url", ""),
            username=config.get("vcenter.username", ""),
            password=config.get("vcenter.password", ""),
            verify_ssl=config.get("vcenter.verify_ssl", False),
            timeout=config.get("vcenter.timeout", 30),
            task_timeout=config.get("vcenter.task_timeout", constants.DEFAULT_MAINTENANCE_TIMEOUT),
            poll_interval=config.get("vcenter.poll_interval", constants.DEFAULT_TASK_POLL_INTERVAL),
        )

    def _get_session(self) -> requests.Session:
        """Get or create an authenticated session."""
        with self._session_lock:
            if self._session is None:
                session = requests.Session()
                session.verify = self.verify_ssl
                try:
                    response = session.post(
                        f"{self.url}{SESSION_PATH}",
                        auth=(self.username, self.password),
                        timeout=self.timeout,
                    )
                    response.raise_for_status()
                except requests.RequestException as e:
                    raise VCenterRequestError(SESSION_PATH, str(e)) from e
                session.headers[SESSION_HEADER] = response.json()
                self._session = session
                self.logger.info(f"Connected to vCenter: {self.url}")
            return self._session

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request, re-authenticating once if the session expired."""
        for attempt in (1, 2):
            session = self._get_session()
            try:
                response = session.request(method, f"{self.url}{path}", timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                raise VCenterRequestError(path, str(e)) from e
            if response.status_code == 401 and attempt == 1:
                with self._session_lock:
                    self._session = None
                continue
            if response.status_code >= 400:
                raise VCenterRequestError(path, f"HTTP {response.status_code}: {response.text[:200]}")
            return response.json() if response.content else None
        raise VCenterRequestError(path, "authentication rejected")

    def _host_id(self, host_name: str) -> str:
        """vCenter identifier (moid) of a host."""
        if host_name not in self._host_ids:
            hosts = self._request("GET", HOSTS_PATH, params={"names": host_name})
            if not hosts:
                raise DiscoveryError(host_name, "host not registered in vCenter")
            self._host_ids[host_name] = hosts[0]["host"]
        return self._host_ids[host_name]

    def _wait_for_task(self, task_id: str) -> None:
        """Block until a vCenter task finishes."""
        deadline = time.monotonic() + self.task_timeout
        while True:
            task = self._request("GET", f"{TASKS_PATH}/{task_id}")
            status = task.get("status", "")
            if status == TASK_SUCCEEDED:
                return
            if status in TASK_FAILED:
                error = task.get("error", {})
                messages = error.get("messages", []) if isinstance(error, dict) else []
                reason = "; ".join(m.get("default_message", "") for m in messages) or status.lower()
                raise VCenterRequestError(f"{TASKS_PATH}/{task_id}", reason)
            if time.monotonic() >= deadline:
                raise VCenterRequestError(
                    f"{TASKS_PATH}/{task_id}", f"task not finished after {self.task_timeout:.0f}s"
                )
            self.sleep(self.poll_interval)

    def _maintenance(self, host_name: str, action: str) -> None:
        host_id = self._host_id(host_name)
        task_id = self._request(
            "POST", f"{HOSTS_PATH}/{host_id}",
            params={"action": action, "vmw-task": "true"},
        )
        self._wait_for_task(task_id)

    def enter_maintenance_mode(self, host_name: str) -> None:
        """
        Put a host in maintenance mode and wait for vCenter to confirm.

        With DRS enabled vCenter evacuates the host's VMs first.

        Raises:
            EvacuationError: If the host does not reach maintenance mode
        """
        log_with_context(self.logger, "info", f"Entering maintenance mode on {host_name}",
                         host_id=host_name, phase="maintenance_enter")
        try:
            self._maintenance(host_name, "enter-maintenance-mode")
        except FirmwareRolloutError as e:
            raise EvacuationError(host_name, str(e)) from e

    def exit_maintenance_mode(self, host_name: str) -> None:
        """
        Take a host out of maintenance mode and wait for vCenter to confirm.

        Raises:
            RollbackError: If the host stays in maintenance mode
        """
        log_with_context(self.logger, "info", f"Exiting maintenance mode on {host_name}",
                         host_id=host_name, phase="maintenance_exit")
        try:
            self._maintenance(host_name, "exit-maintenance-mode")
        except FirmwareRolloutError as e:
            raise RollbackError(host_name, f"cannot exit maintenance mode: {e}") from e

    def get_cluster_capacity(self, cluster_name: str) -> ClusterCapacity:
        """
        Active and total hosts of a cluster.

        A host counts as active when it is connected and powered on.

        Raises:
            DiscoveryError: If the cluster is unknown or vCenter cannot be queried
        """
        try:
            clusters = self._request("GET", CLUSTERS_PATH, params={"names": cluster_name})
            if not clusters:
                raise DiscoveryError(cluster_name, "cluster not found in vCenter")
            cluster = clusters[0]
            hosts: List[Dict[str, Any]] = self._request(
                "GET", HOSTS_PATH, params={"clusters": cluster["cluster"]}
            )
        except VCenterRequestError as e:
            raise DiscoveryError(cluster_name, str(e)) from e

        active = sum(
            1 for h in hosts
            if h.get("connection_state") == "CONNECTED" and h.get("power_state") == "POWERED_ON"
        )
        return ClusterCapacity(
            active=active,
            total=len(hosts),
            drs_enabled=bool(cluster.get("drs_enabled", False)),
        )

    def has_running_vms(self, host_name: str) -> bool:
        """Whether any powered-on VM still runs on the host."""
        host_id = self._host_id(host_name)
        vms = self._request("GET", VMS_PATH, params={"hosts": host_id, "power_states": "POWERED_ON"})
        return bool(vms)
