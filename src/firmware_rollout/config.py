"""Configuration management."""

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

from firmware_rollout import constants
from firmware_rollout.utils.file_ops import atomic_write_json, safe_read_json, ensure_directory_structure


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overrides`` on top of ``defaults``."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Application configuration manager."""

    def __init__(self, config_file: Optional[Path] = None, work_dir: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to config file (defaults to work_dir/config/config.json)
            work_dir: Working directory (resolved via work_dir_resolver before calling)
        """
        self.work_dir = Path(work_dir) if work_dir else constants.DEFAULT_WORK_DIR

        if config_file:
            self.config_file = Path(config_file)
        else:
            self.config_file = self.work_dir / constants.CONFIG_SUBDIR / constants.CONFIG_FILE_NAME

        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file, filling gaps with defaults."""
        self._config = _merge(self._get_default_config(), safe_read_json(self.config_file))
        self._ensure_directories()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration."""
        config_dir = self.work_dir / constants.CONFIG_SUBDIR
        return {
            "catalog": {
                "file": str(config_dir / constants.CATALOG_FILE_NAME),
            },
            "compatibility": {
                "matrix_file": str(config_dir / constants.COMPATIBILITY_MATRIX_FILE_NAME),
            },
            "inventory": {
                "file": str(self.work_dir / constants.DIR_INVENTORY / constants.INVENTORY_FILE_NAME),
            },
            "credentials": {
                "username_env": constants.DEFAULT_BMC_USERNAME_ENV,
                "password_env": constants.DEFAULT_BMC_PASSWORD_ENV,
            },
            "vcenter": {
                "url": "",
                "username": "",
                "password": "",
                "verify_ssl": False,
                "timeout": constants.DEFAULT_PROBE_TIMEOUT * 3,
                "task_timeout": constants.DEFAULT_MAINTENANCE_TIMEOUT,
                "poll_interval": constants.DEFAULT_TASK_POLL_INTERVAL,
            },
            "protocols": {
                "enabled": ["redfish", "wsman", "racadm", "ipmi", "ssh"],
                "verify_ssl": False,
                "probe_timeout": constants.DEFAULT_PROBE_TIMEOUT,
                "command_timeout": constants.DEFAULT_COMMAND_TIMEOUT,
                "task_timeout": constants.DEFAULT_TASK_TIMEOUT,
                "task_poll_interval": constants.DEFAULT_TASK_POLL_INTERVAL,
                "reboot_timeout": constants.DEFAULT_REBOOT_TIMEOUT,
                "racadm_path": constants.DEFAULT_RACADM_PATH,
                "ipmitool_path": constants.DEFAULT_IPMITOOL_PATH,
                "ssh_path": constants.DEFAULT_SSH_PATH,
            },
            "orchestration": {
                "min_active_ratio": constants.DEFAULT_MIN_ACTIVE_RATIO,
                "min_active_hosts": {},
                "default_step_duration_minutes": constants.DEFAULT_STEP_DURATION_MINUTES,
            },
            "maintenance_windows": [],
            "workers": {
                "max": constants.DEFAULT_WORKERS,
                "queue_size": 1000,
            },
            "logging": {
                "level": constants.DEFAULT_LOG_LEVEL,
            },
            "paths": {
                "work_dir": str(self.work_dir),
            },
        }

    def _ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            constants.DIR_CONFIG,
            constants.DIR_INVENTORY,
            constants.DIR_PLANS,
            constants.DIR_JOBS,
            constants.DIR_STATUS,
            constants.DIR_LOGS_STRUCTURED,
            constants.DIR_LOGS_TEXT,
            constants.DIR_LOGS_EXECUTION,
            constants.DIR_COMMANDS_INCOMING,
            constants.DIR_COMMANDS_PROCESSED,
        ]
        ensure_directory_structure(self.work_dir, directories)

    def save(self) -> None:
        """Save configuration to file."""
        atomic_write_json(self.config_file, self._config)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., "vcenter.url")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value by dot-notation key and persist it.

        Args:
            key: Configuration key (e.g., "workers.max")
            value: Value to set
        """
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            config = config.setdefault(k, {})
        config[keys[-1]] = value
        self.save()

    def get_path(self, relative_path: str) -> Path:
        """Absolute path of a location inside the work directory."""
        return self.work_dir / relative_path

    @property
    def catalog_file(self) -> Path:
        """Firmware catalog file."""
        return Path(self.get("catalog.file"))

    @property
    def compatibility_matrix_file(self) -> Path:
        """Compatibility matrix file."""
        return Path(self.get("compatibility.matrix_file"))

    @property
    def inventory_file(self) -> Path:
        """Host inventory file."""
        return Path(self.get("inventory.file"))

    @property
    def max_workers(self) -> int:
        """Get maximum number of workers."""
        return min(self.get("workers.max", constants.DEFAULT_WORKERS), constants.MAX_WORKERS)

    @property
    def min_active_ratio(self) -> float:
        """Fraction of a cluster that must stay in service."""
        return float(self.get("orchestration.min_active_ratio", constants.DEFAULT_MIN_ACTIVE_RATIO))

    @property
    def min_active_overrides(self) -> Dict[str, int]:
        """Per-cluster minimum active host overrides."""
        return dict(self.get("orchestration.min_active_hosts", {}) or {})

    @property
    def default_step_duration_minutes(self) -> int:
        """Duration used for catalog steps that declare none."""
        return self.get(
            "orchestration.default_step_duration_minutes",
            constants.DEFAULT_STEP_DURATION_MINUTES,
        )

    @property
    def maintenance_windows(self) -> List[Dict[str, Any]]:
        """Configured maintenance windows."""
        return list(self.get("maintenance_windows", []) or [])

    @property
    def enabled_protocols(self) -> List[str]:
        """Management protocols the engine may use."""
        return list(self.get("protocols.enabled", []))

    @property
    def vcenter_url(self) -> str:
        """vCenter base URL (empty when no virtualization manager is used)."""
        return self.get("vcenter.url", "")

    @property
    def log_level(self) -> str:
        """Get log level."""
        return self.get("logging.level", constants.DEFAULT_LOG_LEVEL)


# Global config instance
_config: Optional[Config] = None


def get_config(config_file: Optional[Path] = None, work_dir: Optional[Path] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_file: Path to config file (only used on first call)
        work_dir: Working directory (only used on first call)

    Returns:
        Config instance
    """
    global _config
    if _config is None:
        _config = Config(config_file, work_dir)
    return _config
