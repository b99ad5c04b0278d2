"""Remote RACADM client."""

import os
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from firmware_rollout import constants
from firmware_rollout.models import ManagementProtocol, UpdateStep
from firmware_rollout.protocols.base import (
    CommandProtocolClient, ManagementTarget, matches_component, parse_key_values
)


JOB_ID_PATTERN = re.compile(r"\b(JID_\d+)\b")

STAGED_JOB_STATES = {"downloaded", "scheduled", "running", "completed", "new"}
APPLIED_JOB_STATES = {"completed", "scheduled"}
FAILED_JOB_STATES = {"failed", "completedwitherrors"}

# Output fragments meaning the image itself was rejected
NON_RECOVERABLE_OUTPUT = ("invalid", "not applicable", "not compatible", "checksum")


def split_image_uri(image_uri: str) -> Tuple[str, str]:
    """Split an image URI into the ``-l`` location and the ``-f`` file name."""
    parsed = urlparse(image_uri)
    if parsed.scheme:
        path = parsed.path
        location = f"{parsed.scheme}://{parsed.netloc}{os.path.dirname(path)}"
    else:
        path = image_uri
        location = os.path.dirname(path)
    return location, os.path.basename(path)


def parse_swinventory(output: str) -> List[Dict[str, str]]:
    """Parse ``racadm swinventory`` blocks separated by dashed lines."""
    items: List[Dict[str, str]] = []
    for block in re.split(r"-{5,}", output):
        values = parse_key_values(block)
        if values.get("ElementName"):
            items.append(values)
    return items


class RacadmClient(CommandProtocolClient):
    """Firmware updates through ``racadm update`` and the Lifecycle job queue."""

    protocol = ManagementProtocol.RACADM

    def __init__(self, binary: str = constants.DEFAULT_RACADM_PATH, **kwargs):
        super().__init__(binary, **kwargs)

    def racadm_args(self, target: ManagementTarget) -> List[str]:
        """
        Connection options for remote racadm.

        ``-i`` makes racadm prompt for the user name and password, which
        ``command_input`` answers on standard input.
        """
        return ["-r", target.address, "-i", "--nocertwarn"]

    def command_input(self, target: ManagementTarget) -> Optional[str]:
        credentials = target.credentials
        return f"{credentials.username}\n{credentials.password or ''}\n"

    def command(self, target: ManagementTarget, args: List[str]) -> List[str]:
        return [self.binary] + self.racadm_args(target) + args

    def classify_failure(self, output: str) -> bool:
        lowered = output.lower()
        return not any(fragment in lowered for fragment in NON_RECOVERABLE_OUTPUT)

    def _probe(self, target: ManagementTarget) -> Tuple[str, bool]:
        info = parse_key_values(self.run(target, ["getsysinfo"], "probe"))
        model = info.get("System Model", "")
        firmware = info.get("Firmware Version", "")
        return f"{model} iDRAC {firmware}".strip(), True

    def _job_state(self, target: ManagementTarget, job_id: str, operation: str) -> str:
        output = self.run(target, ["jobqueue", "view", "-i", job_id], operation)
        values = parse_key_values(output)
        state = values.get("Status", "").replace(" ", "").lower()
        if state in FAILED_JOB_STATES:
            raise self.error(
                operation,
                f"job {job_id} {state}: {values.get('Message', '')}",
                recoverable=False,
            )
        return state

    def transfer(self, target: ManagementTarget, step: UpdateStep) -> str:
        if not step.image_uri:
            raise self.error("transfer", f"no image URI for {step.component_type} {step.to_version}",
                             recoverable=False)
        location, file_name = split_image_uri(step.image_uri)
        output = self.run(
            target, ["update", "-f", file_name, "-l", location], "transfer",
            timeout=self.command_timeout,
        )
        match = JOB_ID_PATTERN.search(output)
        if not match:
            raise self.error("transfer", f"no job id in racadm output: {output[:200]}")
        job_id = match.group(1)

        self.logger.info(f"{target.host_id}: staging {file_name} as {job_id}")
        self.wait_until(
            "transfer",
            lambda: self._job_state(target, job_id, "transfer") in STAGED_JOB_STATES,
            self.task_timeout,
        )
        return job_id

    def apply(self, target: ManagementTarget, step: UpdateStep, handle: str) -> None:
        self.wait_until(
            "apply",
            lambda: self._job_state(target, handle, "apply") in APPLIED_JOB_STATES,
            self.task_timeout,
        )

    def abort(self, target: ManagementTarget, handle: str) -> None:
        self.run(target, ["jobqueue", "delete", "-i", handle], "abort")

    def reboot(self, target: ManagementTarget) -> None:
        self.run(target, ["serveraction", "powercycle"], "reboot")
        self.sleep(self.poll_interval)
        self.wait_until("reboot", lambda: self.check_health(target), self.reboot_timeout,
                        tolerate_errors=True)

    def get_firmware_version(self, target: ManagementTarget, component_type: str) -> str:
        output = self.run(target, ["swinventory"], "inventory", timeout=self.command_timeout)
        for item in parse_swinventory(output):
            # swinventory also lists rollback and available images
            if item.get("Rollback Version") or "Current Version" not in item:
                continue
            if matches_component(component_type, item["ElementName"]):
                return item["Current Version"]
        raise self.error("inventory", f"{component_type} not found in software inventory",
                         recoverable=False)

    def check_health(self, target: ManagementTarget) -> bool:
        info = parse_key_values(self.run(target, ["getsysinfo"], "health"))
        return info.get("Power Status", "").upper() == "ON"
