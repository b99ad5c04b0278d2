"""Pytest configuration and fixtures for firmware rollout tests."""

import json
import pytest
from pathlib import Path

# Add src and tests to path for imports
import sys
_project_root = Path(__file__).parent.parent
sys.path.insert(0, str(_project_root / "src"))
sys.path.insert(0, str(_project_root))

from firmware_rollout.models import ManagementProtocol
from tests.helpers import (
    CatalogComponent,
    FakeCredentialResolver,
    FakeVirtualizationManager,
    build_catalog,
    fake_clients,
)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def test_work_dir(tmp_path) -> Path:
    """
    Provides a fresh temporary work directory for each test.

    Config creates the standard directory structure on first use.
    """
    work_dir = tmp_path / "firmware-rollout"
    (work_dir / "config").mkdir(parents=True, exist_ok=True)
    return work_dir


@pytest.fixture
def test_config(test_work_dir) -> "Config":
    """
    Provides a test configuration pointing to temp directories.
    """
    from firmware_rollout.config import Config

    config_data = {
        "protocols": {
            "enabled": ["redfish", "racadm", "ipmi"],
            "probe_timeout": 5,
        },
        "orchestration": {
            "min_active_ratio": 0.5,
            "min_active_hosts": {"prod-01": 2},
        },
        "workers": {
            "max": 2,
            "queue_size": 10
        },
        "logging": {
            "level": "DEBUG"
        },
    }

    config_file = test_work_dir / "config" / "config.json"
    with open(config_file, 'w') as f:
        json.dump(config_data, f, indent=2)

    return Config(config_file=str(config_file), work_dir=str(test_work_dir))


@pytest.fixture(autouse=True)
def reset_global_config():
    """Drop the cached global Config so each test resolves its own work dir."""
    import firmware_rollout.config as config_module

    config_module._config = None
    yield
    config_module._config = None


# =============================================================================
# Catalog and Host Fixtures
# =============================================================================

@pytest.fixture
def multi_step_catalog():
    """
    Catalog for model R750: BIOS 1.0.0 -> 1.5.0 -> 2.0.0, iDRAC direct to 7.00.
    """
    return build_catalog(
        "R750",
        BIOS=CatalogComponent("2.0.0", path=["1.0.0", "1.5.0", "2.0.0"], duration=20,
                              criticality="critical"),
        iDRAC=CatalogComponent("7.00", duration=10, requires_reboot=False),
    )


@pytest.fixture
def sample_inventory_data() -> dict:
    """Inventory document with a two-host cluster and a standalone host."""
    return {
        "hosts": {
            "esx-001": {
                "hostname": "esx-001.example.com",
                "model": "R750",
                "service_tag": "ABC0001",
                "cluster_name": "prod-01",
                "management_address": "10.0.0.11",
                "current_versions": {"BIOS": "1.0.0", "iDRAC": "6.10"},
                "credentials_ref": "env:IDRAC_USER,IDRAC_PASS",
            },
            "esx-002": {
                "hostname": "esx-002.example.com",
                "model": "R750",
                "cluster_name": "prod-01",
                "management_address": "10.0.0.12",
                "current_versions": {"BIOS": "2.0.0", "iDRAC": "7.00"},
            },
            "bare-001": {
                "hostname": "bare-001.example.com",
                "model": "R650",
                "management_address": "10.0.1.10",
                "current_versions": {"BIOS": "1.2.0"},
                "credentials_ref": "key:/etc/firmware-rollout/id_rsa",
            },
        },
        "last_updated": "2026-10-01T00:00:00+00:00",
    }


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def redfish_racadm_clients():
    """Fake Redfish and RACADM clients, both update capable."""
    return fake_clients(ManagementProtocol.REDFISH, ManagementProtocol.RACADM)


@pytest.fixture
def credential_resolver() -> FakeCredentialResolver:
    """Credential resolver returning fixed credentials."""
    return FakeCredentialResolver()


@pytest.fixture
def vcenter() -> FakeVirtualizationManager:
    """Empty fake virtualization manager; tests register clusters on it."""
    return FakeVirtualizationManager()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
