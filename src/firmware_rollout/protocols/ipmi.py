"""IPMI client (ipmitool). Power control and inventory only."""

import os
from typing import Dict, List, Tuple

from firmware_rollout import constants
from firmware_rollout.models import ManagementProtocol, UpdateStep
from firmware_rollout.protocols.base import CommandProtocolClient, ManagementTarget, parse_key_values


class IpmiClient(CommandProtocolClient):
    """
    IPMI over LAN.

    IPMI has no portable firmware update path, so the client is probed as
    supported but not update capable. The orchestrator never selects it for
    transfers; it still serves reboots, health checks and BMC version reads.
    """

    protocol = ManagementProtocol.IPMI

    def __init__(self, binary: str = constants.DEFAULT_IPMITOOL_PATH, **kwargs):
        super().__init__(binary, **kwargs)

    def command(self, target: ManagementTarget, args: List[str]) -> List[str]:
        return [
            self.binary, "-I", "lanplus",
            "-H", target.address,
            "-U", target.credentials.username,
            "-E",
        ] + args

    def command_env(self, target: ManagementTarget) -> Dict[str, str]:
        """Pass the password through IPMI_PASSWORD (``-E``) so it stays off the command line."""
        return dict(os.environ, IPMI_PASSWORD=target.credentials.password or "")

    def _probe(self, target: ManagementTarget) -> Tuple[str, bool]:
        info = parse_key_values(self.run(target, ["mc", "info"], "probe"), separator=":")
        return f"BMC firmware {info.get('Firmware Revision', 'unknown')}", False

    def transfer(self, target: ManagementTarget, step: UpdateStep) -> str:
        raise self.error("transfer", "firmware transfer is not supported over IPMI", recoverable=False)

    def apply(self, target: ManagementTarget, step: UpdateStep, handle: str) -> None:
        raise self.error("apply", "firmware apply is not supported over IPMI", recoverable=False)

    def reboot(self, target: ManagementTarget) -> None:
        self.run(target, ["chassis", "power", "cycle"], "reboot")
        self.sleep(self.poll_interval)
        self.wait_until("reboot", lambda: self.check_health(target), self.reboot_timeout,
                        tolerate_errors=True)

    def get_firmware_version(self, target: ManagementTarget, component_type: str) -> str:
        if component_type.lower() not in ("bmc", "idrac"):
            raise self.error("inventory", f"{component_type} version is not exposed over IPMI",
                             recoverable=False)
        info = parse_key_values(self.run(target, ["mc", "info"], "inventory"), separator=":")
        return info.get("Firmware Revision", "")

    def check_health(self, target: ManagementTarget) -> bool:
        status = parse_key_values(self.run(target, ["chassis", "status"], "health"), separator=":")
        return status.get("System Power", "").lower() == "on"
