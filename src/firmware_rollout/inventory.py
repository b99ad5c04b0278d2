"""Host inventory and management credential resolution."""

import os
from pathlib import Path
from typing import Dict, List, Optional

from firmware_rollout import constants
from firmware_rollout.exceptions import ConfigurationError, DiscoveryError
from firmware_rollout.logging_config import get_logger
from firmware_rollout.models import Credentials, HostRecord, utc_now_iso
from firmware_rollout.utils.file_ops import atomic_write_json, safe_read_json


class HostInventory:
    """
    File-backed host inventory.

    The file holds ``{"hosts": {host_id: {...}}, "last_updated": ...}``;
    entries are maintained by an external inventory system.
    """

    def __init__(self, inventory_file: Path):
        """
        Initialize host inventory.

        Args:
            inventory_file: Path to inventory.json
        """
        self.inventory_file = Path(inventory_file)
        self.logger = get_logger("firmware_rollout.inventory")
        self._hosts: Dict[str, HostRecord] = {}
        self._load_inventory()

    def _load_inventory(self) -> None:
        """Load inventory from file."""
        try:
            data = safe_read_json(self.inventory_file, default={})
        except ValueError as e:
            raise ConfigurationError(f"Invalid inventory file {self.inventory_file}: {e}") from e

        hosts = {}
        for host_id, entry in data.get("hosts", {}).items():
            entry = dict(entry)
            entry.setdefault("host_id", host_id)
            hosts[str(host_id)] = HostRecord.from_dict(entry)
        self._hosts = hosts
        self.logger.debug(
            f"Loaded inventory: {len(self._hosts)} hosts "
            f"(last updated: {data.get('last_updated', 'never')})"
        )

    def reload(self) -> None:
        """Reload inventory from disk."""
        self._load_inventory()

    def save(self) -> None:
        """Save inventory to file."""
        atomic_write_json(self.inventory_file, {
            "hosts": {host_id: host.to_dict() for host_id, host in self._hosts.items()},
            "last_updated": utc_now_iso(),
            "host_count": len(self._hosts),
        })

    def add_host(self, host: HostRecord) -> None:
        """Add or replace a host record."""
        self._hosts[host.host_id] = host

    def get_host(self, host_id: str) -> HostRecord:
        """
        Get a host record.

        Raises:
            DiscoveryError: If the host is not in the inventory
        """
        host = self._hosts.get(host_id)
        if host is None:
            raise DiscoveryError(host_id, "host not found in inventory")
        return host

    def list_hosts(self, cluster_name: Optional[str] = None) -> List[HostRecord]:
        """All hosts, optionally restricted to one cluster."""
        hosts = list(self._hosts.values())
        if cluster_name is not None:
            hosts = [h for h in hosts if h.cluster_name == cluster_name]
        return hosts

    def count(self) -> int:
        """Number of hosts in the inventory."""
        return len(self._hosts)


class CredentialResolver:
    """
    Resolves a host's ``credentials_ref`` into management credentials.

    References:
        ``env:USER_VAR,PASS_VAR`` reads both values from the environment;
        ``key:/path/to/key[,USER_VAR]`` selects key authentication (SSH);
        an empty reference falls back to the default variables.
    """

    def __init__(self, inventory=None, username_env: str = constants.DEFAULT_BMC_USERNAME_ENV,
                 password_env: str = constants.DEFAULT_BMC_PASSWORD_ENV, environ=None):
        """
        Initialize credential resolver.

        Args:
            inventory: Inventory providing ``get_host(host_id)``
            username_env: Default username variable
            password_env: Default password variable
            environ: Environment mapping (defaults to ``os.environ``)
        """
        self.inventory = inventory
        self.username_env = username_env
        self.password_env = password_env
        self.environ = os.environ if environ is None else environ

    def _lookup(self, variable: str, host_id: str) -> str:
        value = self.environ.get(variable)
        if value is None:
            raise ConfigurationError(f"Credential variable {variable} for host {host_id} is not set")
        return value

    def resolve(self, host_id: str, reference: str) -> Credentials:
        """
        Resolve a credentials reference.

        Raises:
            ConfigurationError: If the reference is malformed or a variable is unset
        """
        scheme, _, value = reference.partition(":")
        if not reference:
            return Credentials(
                username=self._lookup(self.username_env, host_id),
                password=self._lookup(self.password_env, host_id),
            )
        if scheme == "env":
            names = [n.strip() for n in value.split(",")]
            if len(names) != 2 or not all(names):
                raise ConfigurationError(f"Invalid credentials reference for {host_id}: {reference}")
            return Credentials(
                username=self._lookup(names[0], host_id),
                password=self._lookup(names[1], host_id),
            )
        if scheme == "key":
            path, _, user_var = value.partition(",")
            if not path:
                raise ConfigurationError(f"Invalid credentials reference for {host_id}: {reference}")
            return Credentials(
                username=self._lookup(user_var.strip() or self.username_env, host_id),
                private_key_path=path.strip(),
            )
        raise ConfigurationError(f"Unsupported credentials reference for {host_id}: {reference}")

    def get_credentials(self, host_id: str) -> Credentials:
        """Credentials of an inventory host."""
        if self.inventory is None:
            return self.resolve(host_id, "")
        return self.resolve(host_id, self.inventory.get_host(host_id).credentials_ref)
