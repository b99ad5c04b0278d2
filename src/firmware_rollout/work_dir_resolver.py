"""Work directory resolution with source tracking."""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from firmware_rollout import constants


# Environment variable name
ENV_VAR_NAME = "FIRMWARE_ROLLOUT_HOME"

# User config file name
USER_CONFIG_FILE = ".firmware-rollout.config.json"


class ConfigSource(Enum):
    """Where the work directory came from."""
    CLI_FLAG = "from --work-dir flag"
    ENV_VAR = f"from {ENV_VAR_NAME} environment variable"
    USER_CONFIG = f"from ~/{USER_CONFIG_FILE}"
    DEFAULT = "default"


@dataclass
class WorkDirResolution:
    """Resolved work directory."""
    path: Path
    source: ConfigSource

    def log_message(self) -> str:
        """Describe the resolution for the logs."""
        return f"Work directory: {self.path} ({self.source.value})"


def get_user_config_path() -> Path:
    """Path of the per-user pointer file."""
    return Path.home() / USER_CONFIG_FILE


def read_user_config() -> Optional[dict]:
    """
    Read the per-user pointer file.

    Returns:
        Parsed content, or None when the file is missing or unreadable
    """
    user_config_path = get_user_config_path()
    if not user_config_path.exists():
        return None

    try:
        with open(user_config_path, 'r') as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return None


def write_user_config(work_dir: Path) -> Path:
    """
    Remember a work directory in the per-user pointer file.

    Args:
        work_dir: Work directory to record

    Returns:
        Path of the pointer file
    """
    user_config_path = get_user_config_path()
    config_data = {
        "work_dir": str(work_dir),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "created_by": "firmware-rollout init",
    }

    temp_path = user_config_path.with_suffix('.tmp')
    try:
        with open(temp_path, 'w') as f:
            json.dump(config_data, f, indent=2)
        temp_path.replace(user_config_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise

    return user_config_path


def resolve_work_dir(cli_work_dir: Optional[str] = None) -> WorkDirResolution:
    """
    Resolve the work directory.

    Priority order: ``--work-dir`` flag, ``FIRMWARE_ROLLOUT_HOME``, the
    per-user pointer file, then ``/opt/firmware-rollout``.

    Args:
        cli_work_dir: Value of the CLI flag, if given

    Returns:
        WorkDirResolution with path and source
    """
    if cli_work_dir:
        return WorkDirResolution(Path(cli_work_dir).expanduser().resolve(), ConfigSource.CLI_FLAG)

    env_work_dir = os.getenv(ENV_VAR_NAME)
    if env_work_dir:
        return WorkDirResolution(Path(env_work_dir).expanduser().resolve(), ConfigSource.ENV_VAR)

    user_config = read_user_config()
    if user_config and user_config.get("work_dir"):
        return WorkDirResolution(
            Path(user_config["work_dir"]).expanduser().resolve(),
            ConfigSource.USER_CONFIG,
        )

    return WorkDirResolution(constants.DEFAULT_WORK_DIR, ConfigSource.DEFAULT)
