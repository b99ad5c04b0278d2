#!/usr/bin/env python3
"""Initialize the firmware rollout work directory."""

import argparse
import sys
from pathlib import Path

import yaml

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from firmware_rollout.config import get_config
from firmware_rollout.inventory import HostInventory
from firmware_rollout.logging_config import setup_logging
from firmware_rollout.work_dir_resolver import (
    resolve_work_dir,
    write_user_config,
    get_user_config_path,
    ENV_VAR_NAME,
)
from firmware_rollout.constants import DEFAULT_WORK_DIR


# Starting points for the operator to edit
SAMPLE_CATALOG = {
    "models": {
        "PowerEdge R750": {
            "BIOS": {
                "target_version": "2.0.0",
                "criticality": "important",
                "requires_reboot": True,
                "estimated_duration_minutes": 20,
                "path": ["1.0.0", "1.5.0", "2.0.0"],
                "images": {"2.0.0": "http://repo.example.com/BIOS_2.0.0.EXE"},
            },
            "iDRAC": {
                "target_version": "7.00.00.00",
                "criticality": "recommended",
                "requires_reboot": False,
                "estimated_duration_minutes": 15,
            },
        },
    },
}

SAMPLE_MATRIX = {
    "risky": {
        "BIOS": [["1.0.0", "2.0.0"]],
    },
}


def _write_yaml_if_missing(path: Path, data: dict) -> bool:
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return True


def main():
    """Initialize system directories and configuration."""
    parser = argparse.ArgumentParser(
        description="Initialize Firmware Rollout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Work directory resolution priority:
  1. --work-dir flag (this script)
  2. {ENV_VAR_NAME} environment variable
  3. ~/.firmware-rollout.config.json (created by this script)
  4. Default: {DEFAULT_WORK_DIR}

Examples:
  python scripts/init_system.py --work-dir ~/opt/firmware-rollout
  sudo python scripts/init_system.py --with-samples
"""
    )
    parser.add_argument('--work-dir', type=str, help='Working directory for all data and config')
    parser.add_argument('--no-user-config', action='store_true',
                        help='Do not write ~/.firmware-rollout.config.json')
    parser.add_argument('--with-samples', action='store_true',
                        help='Write a sample catalog and compatibility matrix')
    args = parser.parse_args()

    print("Initializing Firmware Rollout...")
    print()

    resolution = resolve_work_dir(cli_work_dir=args.work_dir)
    work_dir = resolution.path
    print(f"Work directory: {work_dir} ({resolution.source.value})")
    print()

    # Creates the directory tree
    config = get_config(work_dir=work_dir)
    config.save()
    print(f"✓ Created work directory: {config.work_dir}")
    print(f"✓ Wrote configuration: {config.config_file}")

    if not config.inventory_file.exists():
        HostInventory(config.inventory_file).save()
        print(f"✓ Created empty inventory: {config.inventory_file}")

    if args.with_samples:
        if _write_yaml_if_missing(config.catalog_file, SAMPLE_CATALOG):
            print(f"✓ Wrote sample catalog: {config.catalog_file}")
        if _write_yaml_if_missing(config.compatibility_matrix_file, SAMPLE_MATRIX):
            print(f"✓ Wrote sample compatibility matrix: {config.compatibility_matrix_file}")

    if not args.no_user_config:
        try:
            user_config_path = write_user_config(work_dir)
            print(f"✓ Wrote user config: {user_config_path}")
        except OSError as e:
            print(f"⚠ Could not write user config: {e}")
    else:
        print("⊘ Skipped writing user config (--no-user-config)")

    logger = setup_logging(config.get_path("logs"), "INFO", console_output=False)
    logger.info("System initialized")

    print()
    print(f"User config file: {get_user_config_path()}")
    print()
    print("Next steps:")
    print("1. Describe target firmware in the catalog:")
    print(f"   {config.catalog_file}")
    print("2. Populate the host inventory:")
    print(f"   {config.inventory_file}")
    print("3. Point the engine at vCenter (optional):")
    print("   firmware-rollout config set vcenter.url https://vcenter.example.com")
    print("4. Start the daemon:")
    print("   firmware-rollout daemon start")
    print()
    print("System initialization complete!")


if __name__ == "__main__":
    main()
