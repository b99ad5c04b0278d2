"""Management protocol clients."""

from typing import Dict

from firmware_rollout.exceptions import ConfigurationError
from firmware_rollout.models import ManagementProtocol
from firmware_rollout.protocols.base import ManagementTarget, ProtocolClient
from firmware_rollout.protocols.ipmi import IpmiClient
from firmware_rollout.protocols.racadm import RacadmClient
from firmware_rollout.protocols.redfish import RedfishClient
from firmware_rollout.protocols.ssh import SshClient
from firmware_rollout.protocols.wsman import WsmanClient


def build_protocol_clients(config) -> Dict[ManagementProtocol, ProtocolClient]:
    """
    Create a client for every enabled protocol.

    Args:
        config: Configuration instance

    Returns:
        Clients keyed by protocol, in preference order

    Raises:
        ConfigurationError: If an enabled protocol name is unknown
    """
    timeouts = {
        "timeout": config.get("protocols.probe_timeout"),
        "command_timeout": config.get("protocols.command_timeout"),
        "task_timeout": config.get("protocols.task_timeout"),
        "poll_interval": config.get("protocols.task_poll_interval"),
        "reboot_timeout": config.get("protocols.reboot_timeout"),
    }
    verify_ssl = config.get("protocols.verify_ssl", False)
    factories = {
        ManagementProtocol.REDFISH: lambda: RedfishClient(verify_ssl=verify_ssl, **timeouts),
        ManagementProtocol.WSMAN: lambda: WsmanClient(verify_ssl=verify_ssl, **timeouts),
        ManagementProtocol.RACADM: lambda: RacadmClient(config.get("protocols.racadm_path"), **timeouts),
        ManagementProtocol.IPMI: lambda: IpmiClient(config.get("protocols.ipmitool_path"), **timeouts),
        ManagementProtocol.SSH: lambda: SshClient(config.get("protocols.ssh_path"), **timeouts),
    }

    try:
        enabled = {ManagementProtocol.parse(name) for name in config.enabled_protocols}
    except ValueError as e:
        raise ConfigurationError(f"protocols.enabled: {e}") from e
    return {protocol: factories[protocol]() for protocol in ManagementProtocol.ordered() if protocol in enabled}


__all__ = [
    "ManagementTarget",
    "ProtocolClient",
    "RedfishClient",
    "WsmanClient",
    "RacadmClient",
    "IpmiClient",
    "SshClient",
    "build_protocol_clients",
]
