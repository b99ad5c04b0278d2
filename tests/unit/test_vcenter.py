"""Tests for the vCenter client."""

from unittest.mock import MagicMock, Mock, patch

import pytest

from firmware_rollout.exceptions import (
    ConfigurationError, DiscoveryError, EvacuationError, RollbackError
)
from firmware_rollout.vcenter import VCenterClient


def _response(payload=None, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.content = b"" if payload is None else b"{}"
    response.json.return_value = payload
    response.text = ""
    return response


@pytest.fixture
def session():
    """Patched requests.Session shared by every session the client opens."""
    with patch("firmware_rollout.vcenter.requests.Session") as session_class:
        mock_session = MagicMock()
        mock_session.headers = {}
        mock_session.post.return_value = _response("session-token")
        session_class.return_value = mock_session
        yield mock_session


@pytest.fixture
def client():
    return VCenterClient("https://vcenter.example.com/", "administrator@vsphere.local", "secret",
                         sleep=lambda _: None, poll_interval=0)


class TestSession:
    """Test authentication."""

    def test_session_header(self, client, session):
        """Should send the session token on later requests."""
        session.request.return_value = _response([])

        with pytest.raises(DiscoveryError):
            client._host_id("esx-001")

        assert session.headers["vmware-api-session-id"] == "session-token"
        assert session.post.call_args[0][0] == "https://vcenter.example.com/api/session"

    def test_reauthenticates_once(self, client, session):
        """Should open a new session when the old one expired."""
        session.request.side_effect = [_response(status_code=401), _response([{"host": "host-10"}])]

        assert client._host_id("esx-001") == "host-10"
        assert session.post.call_count == 2

    def test_missing_url(self, test_config):
        """Should require a configured URL."""
        with pytest.raises(ConfigurationError):
            VCenterClient.from_config(test_config)


class TestMaintenanceMode:
    """Test maintenance mode tasks."""

    def test_enter_waits_for_task(self, client, session):
        """Should start the task and poll it to success."""
        session.request.side_effect = [
            _response([{"host": "host-10"}]),
            _response("task-1"),
            _response({"status": "RUNNING"}),
            _response({"status": "SUCCEEDED"}),
        ]

        client.enter_maintenance_mode("esx-001")

        method, url = session.request.call_args_list[1][0]
        assert method == "POST"
        assert url == "https://vcenter.example.com/api/vcenter/host/host-10"
        assert session.request.call_args_list[1][1]["params"]["action"] == "enter-maintenance-mode"
        assert session.request.call_count == 4

    def test_enter_failure_is_evacuation_error(self, client, session):
        """Should report failed evacuations."""
        session.request.side_effect = [
            _response([{"host": "host-10"}]),
            _response("task-1"),
            _response({"status": "FAILED", "error": {"messages": [
                {"default_message": "VM vm-42 cannot be migrated"}
            ]}}),
        ]

        with pytest.raises(EvacuationError) as exc_info:
            client.enter_maintenance_mode("esx-001")

        assert "vm-42 cannot be migrated" in str(exc_info.value)

    def test_exit_failure_is_rollback_error(self, client, session):
        """Should report hosts stuck in maintenance mode."""
        session.request.side_effect = [_response([{"host": "host-10"}]), _response(status_code=500)]

        with pytest.raises(RollbackError) as exc_info:
            client.exit_maintenance_mode("esx-001")

        assert exc_info.value.host_id == "esx-001"

    def test_host_ids_cached(self, client, session):
        """Should look up each host once."""
        session.request.side_effect = [
            _response([{"host": "host-10"}]),
            _response([{"vm": "vm-1"}]),
            _response([]),
        ]

        assert client.has_running_vms("esx-001") is True
        assert client.has_running_vms("esx-001") is False
        assert session.request.call_count == 3


class TestClusterCapacity:
    """Test cluster capacity queries."""

    def test_counts_connected_powered_on_hosts(self, client, session):
        """Should count only hosts serving workloads."""
        session.request.side_effect = [
            _response([{"cluster": "domain-c8", "name": "prod-01", "drs_enabled": True}]),
            _response([
                {"host": "host-1", "connection_state": "CONNECTED", "power_state": "POWERED_ON"},
                {"host": "host-2", "connection_state": "CONNECTED", "power_state": "POWERED_ON"},
                {"host": "host-3", "connection_state": "DISCONNECTED", "power_state": "POWERED_ON"},
            ]),
        ]

        capacity = client.get_cluster_capacity("prod-01")

        assert (capacity.active, capacity.total, capacity.drs_enabled) == (2, 3, True)

    def test_unknown_cluster(self, client, session):
        """Should raise DiscoveryError for unknown clusters."""
        session.request.return_value = _response([])

        with pytest.raises(DiscoveryError):
            client.get_cluster_capacity("prod-99")
