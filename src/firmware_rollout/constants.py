"""Application-wide constants."""

from pathlib import Path

# Default work directory (used as fallback when no other source specifies it)
# Priority order: CLI flag > ENV var > ~/.firmware-rollout.config.json > this default
DEFAULT_WORK_DIR = Path("/opt/firmware-rollout")

# Note: These are relative paths within work_dir, not absolute paths
CONFIG_SUBDIR = "config"
CONFIG_FILE_NAME = "config.json"
CATALOG_FILE_NAME = "catalog.yaml"
COMPATIBILITY_MATRIX_FILE_NAME = "compatibility_matrix.yaml"
INVENTORY_FILE_NAME = "hosts.json"

# Directory structure
DIR_CONFIG = "config"
DIR_INVENTORY = "inventory"
DIR_PLANS = "plans"
DIR_JOBS = "jobs"
DIR_STATUS = "status"
DIR_LOGS = "logs"
DIR_LOGS_STRUCTURED = "logs/structured"
DIR_LOGS_TEXT = "logs/text"
DIR_LOGS_EXECUTION = "logs/execution"
DIR_COMMANDS = "commands"
DIR_COMMANDS_INCOMING = "commands/incoming"
DIR_COMMANDS_PROCESSED = "commands/processed"

# Status files
STATUS_DAEMON_FILE = "status/daemon.json"
STATUS_WORKERS_FILE = "status/workers.json"

# Component types
COMPONENT_BIOS = "BIOS"
COMPONENT_BMC = "iDRAC"
COMPONENT_STORAGE_CONTROLLER = "StorageController"
COMPONENT_NIC = "NIC"

# Hardware dependency convention: lower-level components first
COMPONENT_PRECEDENCE = {
    "bios": 0,
    "idrac": 1,
    "bmc": 1,
    "lifecyclecontroller": 1,
    "storagecontroller": 2,
    "storage_controller": 2,
    "raid": 2,
    "perc": 2,
    "nic": 3,
    "network": 3,
}
UNKNOWN_COMPONENT_PRECEDENCE = 4

# Changing these can leave a host unbootable, so each step is validated
BOOT_CRITICAL_COMPONENTS = {"bios", "storagecontroller", "storage_controller", "raid", "perc"}

# Names used by management controllers when reporting installed firmware
COMPONENT_INVENTORY_KEYWORDS = {
    "bios": ["bios"],
    "idrac": ["idrac", "integrated dell remote access controller"],
    "bmc": ["bmc", "idrac", "integrated dell remote access controller"],
    "lifecyclecontroller": ["lifecycle controller"],
    "storagecontroller": ["perc", "raid", "hba", "storage controller"],
    "storage_controller": ["perc", "raid", "hba", "storage controller"],
    "raid": ["perc", "raid"],
    "perc": ["perc"],
    "nic": ["nic", "network", "ethernet"],
    "network": ["nic", "network", "ethernet"],
}

# Plan statuses
PLAN_STATUS_PENDING_APPROVAL = "pending_approval"
PLAN_STATUS_APPROVED = "approved"
PLAN_STATUS_RUNNING = "running"
PLAN_STATUS_PAUSED = "paused"
PLAN_STATUS_COMPLETED = "completed"
PLAN_STATUS_FAILED = "failed"
PLAN_STATUS_CANCELLED = "cancelled"

# Job statuses
JOB_STATUS_QUEUED = "queued"
JOB_STATUS_TRANSFERRING = "transferring"
JOB_STATUS_APPLYING = "applying"
JOB_STATUS_REBOOTING = "rebooting"
JOB_STATUS_VERIFYING = "verifying"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_CANCELLED = "cancelled"

# Phase statuses
PHASE_STATUS_PENDING = "pending"
PHASE_STATUS_RUNNING = "running"
PHASE_STATUS_PAUSED = "paused"
PHASE_STATUS_COMPLETED = "completed"
PHASE_STATUS_FAILED = "failed"
PHASE_STATUS_CANCELLED = "cancelled"

# Standalone hosts are planned as single-host pseudo-clusters
STANDALONE_CLUSTER_PREFIX = "standalone:"

# Default configuration values
DEFAULT_WORKERS = 4
MAX_WORKERS = 32
DEFAULT_MIN_ACTIVE_RATIO = 0.5
DEFAULT_MAX_PARALLEL_CLUSTERS = 1
DEFAULT_MAX_PARALLEL_HOSTS_PER_CLUSTER = 1
DEFAULT_PROBE_TIMEOUT = 10
DEFAULT_COMMAND_TIMEOUT = 600
DEFAULT_TASK_TIMEOUT = 90 * 60
DEFAULT_TASK_POLL_INTERVAL = 10
DEFAULT_REBOOT_TIMEOUT = 30 * 60
DEFAULT_MAINTENANCE_TIMEOUT = 60 * 60
DEFAULT_STEP_DURATION_MINUTES = 15
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_RACADM_PATH = "racadm"
DEFAULT_IPMITOOL_PATH = "ipmitool"
DEFAULT_SSH_PATH = "ssh"
DEFAULT_BMC_USERNAME_ENV = "BMC_USERNAME"
DEFAULT_BMC_PASSWORD_ENV = "BMC_PASSWORD"
