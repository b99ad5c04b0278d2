"""Tests for the command line interface."""

import json
import logging
from unittest.mock import Mock, patch

import pytest
from click.testing import CliRunner

from firmware_rollout import constants
from firmware_rollout.cli import main
from firmware_rollout.exceptions import ConfigurationError
from firmware_rollout.models import OrchestrationConfig
from firmware_rollout.planner import OrchestrationPlanner
from tests.helpers import make_gap


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging replaces the package handlers on every invocation."""
    logger = logging.getLogger("firmware_rollout")
    handlers = list(logger.handlers)
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = handlers


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path / "firmware-rollout"


@pytest.fixture
def service():
    """Patched service factory."""
    with patch("firmware_rollout.service.FirmwareRolloutService.from_config") as from_config:
        mock_service = Mock()
        from_config.return_value = mock_service
        yield mock_service


def _invoke(work_dir, *args):
    return CliRunner().invoke(main, ["--work-dir", str(work_dir)] + list(args))


def _queued_commands(work_dir):
    incoming = work_dir / constants.DIR_COMMANDS_INCOMING
    return [json.loads(p.read_text()) for p in sorted(incoming.glob("*.json"))]


def _mark_daemon_running(work_dir):
    status_file = work_dir / constants.STATUS_DAEMON_FILE
    status_file.parent.mkdir(parents=True, exist_ok=True)
    status_file.write_text(json.dumps({"running": True, "workers": 2}))


class TestAnalyzeCommands:
    """Test the analyze group."""

    def test_gaps(self, work_dir, service):
        """Should print each host's update sequence and failures."""
        service.analyze_hosts.return_value = ([make_gap("esx-001")], {"esx-999": "host not found"})

        result = _invoke(work_dir, "analyze", "gaps", "esx-001", "esx-999")

        assert result.exit_code == 0
        assert "1. BIOS 1.0.0 -> 2.0.0 (60 min, reboot)" in result.output
        assert "esx-999: FAILED - host not found" in result.output
        service.analyze_hosts.assert_called_once_with(["esx-001", "esx-999"])

    def test_gaps_json(self, work_dir, service):
        """Should print JSON on request."""
        service.analyze_hosts.return_value = ([make_gap("esx-001")], {})

        result = _invoke(work_dir, "analyze", "gaps", "esx-001", "--json")

        payload = json.loads(result.output[result.output.index("{"):])
        assert payload["gaps"][0]["host_id"] == "esx-001"

    def test_hosts_required(self, work_dir, service):
        """Should require host ids or --all."""
        result = _invoke(work_dir, "analyze", "gaps")

        assert result.exit_code == 1
        assert "Specify host ids or --all" in result.output


class TestPlanCommands:
    """Test the plan group."""

    def test_create(self, work_dir, service):
        """Should build the orchestration policy from the options."""
        gaps = [make_gap("esx-001"), make_gap("esx-002")]
        service.analyze_hosts.return_value = (gaps, {})
        service.plan_orchestration.side_effect = lambda g, config: OrchestrationPlanner().plan(g, config)

        result = _invoke(work_dir, "plan", "create", "esx-001", "esx-002",
                         "--strategy", "smart_rolling", "--max-parallel-hosts", "2", "--no-fallback",
                         "--no-health-gate")

        assert result.exit_code == 0
        config = service.plan_orchestration.call_args[0][1]
        assert isinstance(config, OrchestrationConfig)
        assert config.strategy == "smart_rolling"
        assert config.max_parallel_hosts_per_cluster == 2
        assert config.enable_fallback is False
        assert config.hardware_health_gate is False
        assert config.require_manual_approval is True
        assert "Plan created: plan-" in result.output
        assert "firmware-rollout plan approve" in result.output

    def test_create_rejected(self, work_dir, service):
        """Should exit non-zero when planning fails."""
        service.analyze_hosts.return_value = ([make_gap("esx-001")], {})
        service.plan_orchestration.side_effect = ConfigurationError("max_parallel_clusters must be at least 1")

        result = _invoke(work_dir, "plan", "create", "esx-001", "--max-parallel-clusters", "0")

        assert result.exit_code == 1
        assert "Error: max_parallel_clusters must be at least 1" in result.output

    def test_execute_queues_for_daemon(self, work_dir, service):
        """Should hand execution to the daemon and warn when it is down."""
        result = _invoke(work_dir, "plan", "execute", "plan-1")

        assert result.exit_code == 0
        commands = _queued_commands(work_dir)
        assert [(c["command"], c["plan_id"]) for c in commands] == [("execute_plan", "plan-1")]
        assert "daemon does not appear to be running" in result.output
        service.execute_plan.assert_not_called()

    def test_execute_wait(self, work_dir, service):
        """Should run in process with --wait."""
        service.execute_plan.return_value = Mock(id="plan-1", status="failed", failure_reason="host esx-001 failed")

        result = _invoke(work_dir, "plan", "execute", "plan-1", "--wait")

        assert result.exit_code == 1
        assert "Failure Reason: host esx-001 failed" in result.output
        service.execute_plan.assert_called_once_with("plan-1", wait=True)

    def test_pause_without_daemon(self, work_dir, service):
        """Should pause through the service when no daemon runs."""
        service.pause_plan.return_value = Mock(id="plan-1", status="paused")

        result = _invoke(work_dir, "plan", "pause", "plan-1")

        assert "Plan plan-1: paused" in result.output
        assert _queued_commands(work_dir) == []

    def test_cancel_with_daemon(self, work_dir, service):
        """Should queue the command when the daemon runs."""
        _mark_daemon_running(work_dir)

        result = _invoke(work_dir, "plan", "cancel", "plan-1")

        assert result.exit_code == 0
        assert [c["command"] for c in _queued_commands(work_dir)] == ["cancel_plan"]
        service.cancel_plan.assert_not_called()


class TestOtherCommands:
    """Test job, config and daemon commands."""

    def test_job_status_unknown(self, work_dir):
        """Should exit non-zero for unknown jobs."""
        result = _invoke(work_dir, "job", "status", "job-missing")

        assert result.exit_code == 1
        assert "job-missing" in result.output

    def test_config_set_parses_json(self, work_dir):
        """Should keep numeric types when setting values."""
        result = _invoke(work_dir, "config", "set", "workers.max", "8")

        assert result.exit_code == 0
        saved = json.loads((work_dir / "config" / "config.json").read_text())
        assert saved["workers"]["max"] == 8

    def test_daemon_status_not_running(self, work_dir):
        """Should report a missing status file."""
        result = _invoke(work_dir, "daemon", "status")

        assert "Not running or status file not found" in result.output
