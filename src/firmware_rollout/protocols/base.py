"""Common plumbing for out-of-band management protocol clients."""

import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from firmware_rollout import constants
from firmware_rollout.exceptions import ProtocolExecutionError, ProtocolTimeoutError
from firmware_rollout.gap_analyzer import normalize_component
from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import (
    Credentials, HealthGateResult, ManagementProtocol, ProtocolProbe, UpdateStep
)


# HTTP statuses worth retrying on another protocol: auth/session hiccups,
# missing endpoints on older firmware, throttling and server-side faults
RECOVERABLE_HTTP_STATUSES = {401, 403, 404, 408, 409, 429}


def is_recoverable_status(status_code: int) -> bool:
    """Whether an HTTP error status is transient rather than a rejected payload."""
    return status_code >= 500 or status_code in RECOVERABLE_HTTP_STATUSES


@dataclass
class ManagementTarget:
    """Management endpoint of one host."""
    host_id: str
    address: str
    credentials: Credentials
    protocol_hints: List[str] = field(default_factory=list)


class ProtocolClient(ABC):
    """
    Out-of-band firmware operations over one management protocol.

    ``transfer`` stages an image on the controller and returns a handle
    (task URI or job id) that ``apply`` then drives to completion.
    ``apply`` returns once the firmware is installed or scheduled to be
    activated by the next reboot.
    """

    protocol: ManagementProtocol

    def __init__(
        self,
        timeout: float = constants.DEFAULT_PROBE_TIMEOUT,
        command_timeout: float = constants.DEFAULT_COMMAND_TIMEOUT,
        task_timeout: float = constants.DEFAULT_TASK_TIMEOUT,
        poll_interval: float = constants.DEFAULT_TASK_POLL_INTERVAL,
        reboot_timeout: float = constants.DEFAULT_REBOOT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize protocol client.

        Args:
            timeout: Timeout for single requests and probes in seconds
            command_timeout: Timeout for long-running single commands in seconds
            task_timeout: Maximum time to wait for a firmware task in seconds
            poll_interval: Delay between task polls in seconds
            reboot_timeout: Maximum time to wait for a host to come back in seconds
            sleep: Sleep function (replaced in tests)
        """
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self.reboot_timeout = reboot_timeout
        self.sleep = sleep
        self.logger = get_logger(f"firmware_rollout.protocols.{self.protocol.value}")

    @property
    def name(self) -> str:
        """Protocol name."""
        return self.protocol.value

    def error(self, operation: str, reason: str, recoverable: bool = True) -> ProtocolExecutionError:
        """Build an execution error attributed to this protocol."""
        return ProtocolExecutionError(self.name, operation, reason, recoverable=recoverable)

    def probe(self, target: ManagementTarget) -> ProtocolProbe:
        """
        Check whether the host answers on this protocol.

        Never raises; failures are reported as ``supported=False``.
        """
        started = time.monotonic()
        try:
            details, update_capable = self._probe(target)
            supported = True
        except ProtocolExecutionError as e:
            details, update_capable, supported = e.reason, False, False
        latency_ms = round((time.monotonic() - started) * 1000, 1)
        return ProtocolProbe(
            protocol=self.name,
            supported=supported,
            priority=self.protocol.priority,
            latency_ms=latency_ms,
            update_capable=update_capable,
            details=details,
        )

    @abstractmethod
    def _probe(self, target: ManagementTarget):
        """Return ``(details, update_capable)`` or raise ProtocolExecutionError."""

    @abstractmethod
    def transfer(self, target: ManagementTarget, step: UpdateStep) -> str:
        """Stage the step's image on the controller and return an update handle."""

    @abstractmethod
    def apply(self, target: ManagementTarget, step: UpdateStep, handle: str) -> None:
        """Install a staged image."""

    @abstractmethod
    def reboot(self, target: ManagementTarget) -> None:
        """Power-cycle the host and wait until its controller answers again."""

    @abstractmethod
    def get_firmware_version(self, target: ManagementTarget, component_type: str) -> str:
        """Installed version of a component."""

    @abstractmethod
    def check_health(self, target: ManagementTarget) -> bool:
        """Whether the host reports itself healthy."""

    def preflight(self, target: ManagementTarget) -> HealthGateResult:
        """
        Hardware health gate run before a host is updated.

        Controllers that only expose an overall health flag yield a single
        check; clients with subsystem telemetry override this.

        Raises:
            ProtocolExecutionError: If the controller cannot be queried
        """
        result = HealthGateResult()
        healthy = self.check_health(target)
        result.add(
            "system", "overall_health", "OK" if healthy else "Critical",
            f"{self.name} reports the host {'healthy' if healthy else 'unhealthy'}",
        )
        return result

    def abort(self, target: ManagementTarget, handle: str) -> None:
        """Discard a staged, not yet applied, update. No-op unless overridden."""

    def wait_until(
        self,
        operation: str,
        condition: Callable[[], bool],
        timeout: float,
        tolerate_errors: bool = False,
    ) -> None:
        """
        Poll ``condition`` until it returns True.

        Args:
            operation: Operation name used in errors
            condition: Callable returning True when done
            timeout: Maximum time to wait in seconds
            tolerate_errors: Treat recoverable errors as "not yet" (hosts rebooting)

        Raises:
            ProtocolTimeoutError: If the condition does not hold in time
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                if condition():
                    return
            except ProtocolExecutionError as e:
                if not (tolerate_errors and e.recoverable):
                    raise
                self.logger.debug(f"{operation}: still waiting ({e.reason})")
            if time.monotonic() >= deadline:
                raise ProtocolTimeoutError(self.name, operation, timeout)
            self.sleep(self.poll_interval)


class HttpProtocolClient(ProtocolClient):
    """Base for protocols spoken over HTTPS to the management controller."""

    def __init__(self, verify_ssl: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.verify_ssl = verify_ssl

    @staticmethod
    def base_url(target: ManagementTarget) -> str:
        """HTTPS base URL of the controller."""
        address = target.address.rstrip("/")
        if address.startswith(("http://", "https://")):
            return address
        return f"https://{address}"

    def request(
        self,
        method: str,
        target: ManagementTarget,
        path: str,
        operation: str,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Send an authenticated request and classify failures.

        Raises:
            ProtocolTimeoutError: If the request times out
            ProtocolExecutionError: For connection errors and HTTP error statuses
        """
        url = path if path.startswith("http") else f"{self.base_url(target)}{path}"
        timeout = timeout or self.timeout
        try:
            response = requests.request(
                method,
                url,
                auth=(target.credentials.username, target.credentials.password),
                verify=self.verify_ssl,
                timeout=timeout,
                **kwargs,
            )
        except requests.Timeout:
            raise ProtocolTimeoutError(self.name, operation, timeout) from None
        except requests.RequestException as e:
            raise self.error(operation, f"request to {url} failed: {e}") from e

        if response.status_code >= 400:
            raise self.error(
                operation,
                f"HTTP {response.status_code} from {url}: {response.text[:200]}",
                recoverable=is_recoverable_status(response.status_code),
            )
        return response

    def get_json(self, target: ManagementTarget, path: str, operation: str) -> Dict[str, Any]:
        """GET a JSON document."""
        response = self.request("GET", target, path, operation)
        try:
            return response.json()
        except ValueError:
            raise self.error(operation, f"invalid JSON from {path}") from None


class CommandProtocolClient(ProtocolClient):
    """Base for protocols driven through a local command line tool."""

    def __init__(self, binary: str, **kwargs):
        super().__init__(**kwargs)
        self.binary = binary

    @abstractmethod
    def command(self, target: ManagementTarget, args: List[str]) -> List[str]:
        """Full argv for running ``args`` against the target."""

    def classify_failure(self, output: str) -> bool:
        """Whether a failed command's output describes a recoverable condition."""
        return True

    def command_input(self, target: ManagementTarget) -> Optional[str]:
        """Text answering the tool's credential prompts on standard input, if any."""
        return None

    def command_env(self, target: ManagementTarget) -> Optional[Dict[str, str]]:
        """Environment of the tool process; None inherits the current one."""
        return None

    def run(self, target: ManagementTarget, args: List[str], operation: str,
            timeout: Optional[float] = None) -> str:
        """
        Run a command against the target.

        Returns:
            Standard output, stripped

        Raises:
            ProtocolTimeoutError: If the command times out
            ProtocolExecutionError: If the tool is missing or exits non-zero
        """
        timeout = timeout or self.timeout
        argv = self.command(target, args)
        try:
            result = subprocess.run(
                argv, capture_output=True, text=True, timeout=timeout,
                input=self.command_input(target), env=self.command_env(target),
            )
        except subprocess.TimeoutExpired:
            raise ProtocolTimeoutError(self.name, operation, timeout) from None
        except OSError as e:
            raise self.error(operation, f"cannot run {self.binary}: {e}") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise self.error(
                operation,
                f"{self.binary} exited with {result.returncode}: {output[:200]}",
                recoverable=self.classify_failure(output),
            )
        return result.stdout.strip()


def parse_key_values(output: str, separator: str = "=") -> Dict[str, str]:
    """Parse ``Key = Value`` style tool output into a dict (first occurrence wins)."""
    values: Dict[str, str] = {}
    for line in output.splitlines():
        if separator not in line:
            continue
        key, _, value = line.partition(separator)
        key = key.strip()
        if key and key not in values:
            values[key] = value.strip()
    return values


def matches_component(component_type: str, inventory_name: str) -> bool:
    """Whether a controller inventory entry name refers to ``component_type``."""
    keywords = constants.COMPONENT_INVENTORY_KEYWORDS.get(
        normalize_component(component_type), [component_type.lower()]
    )
    name = inventory_name.lower()
    return any(keyword in name for keyword in keywords)
