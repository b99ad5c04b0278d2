"""RACADM over SSH to the management controller."""

from typing import List, Optional

from firmware_rollout import constants
from firmware_rollout.models import ManagementProtocol
from firmware_rollout.protocols.base import ManagementTarget
from firmware_rollout.protocols.racadm import RacadmClient


class SshClient(RacadmClient):
    """
    Runs racadm in the controller's own shell.

    Same job-queue flow as remote racadm, used when the racadm network
    interface is disabled but SSH is open. Key authentication only.
    """

    protocol = ManagementProtocol.SSH

    def __init__(self, binary: str = constants.DEFAULT_SSH_PATH, **kwargs):
        super().__init__(binary, **kwargs)

    def command(self, target: ManagementTarget, args: List[str]) -> List[str]:
        credentials = target.credentials
        argv = [
            self.binary,
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={int(self.timeout)}",
            "-p", str(credentials.port or 22),
        ]
        if credentials.private_key_path:
            argv += ["-i", credentials.private_key_path]
        argv.append(f"{credentials.username}@{target.address}")
        return argv + ["racadm"] + args

    def command_input(self, target: ManagementTarget) -> Optional[str]:
        return None
