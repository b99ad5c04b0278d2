"""Tests for daemon command processing and scheduling."""

import json
from unittest.mock import Mock

import pytest

from firmware_rollout import constants
from firmware_rollout.daemon import CommandQueueHandler, RolloutDaemon
from firmware_rollout.exceptions import ApprovalRequiredError
from firmware_rollout.models import OrchestrationConfig, OrchestrationPlan, PlanStatus


@pytest.fixture
def service():
    return Mock()


@pytest.fixture
def daemon(test_config, service):
    return RolloutDaemon(test_config, service=service)


def _write_command(config, name, **data):
    command_file = config.get_path(constants.DIR_COMMANDS_INCOMING) / name
    command_file.write_text(json.dumps(data))
    return command_file


def _processed(config, name):
    return json.loads((config.get_path(constants.DIR_COMMANDS_PROCESSED) / name).read_text())


def _plan(plan_id, strategy="scheduled", scheduled_start="2026-10-19T02:00:00+00:00"):
    config = OrchestrationConfig(strategy=strategy, scheduled_start=scheduled_start)
    return OrchestrationPlan(id=plan_id, config=config, phases=[], total_duration_hours=0,
                             status=PlanStatus.APPROVED.value)


class TestProcessCommand:
    """Test the command queue."""

    def test_pause_command(self, daemon, service, test_config):
        """Should dispatch to the service and archive the command."""
        command_file = _write_command(test_config, "cmd-1.json", command="pause_plan", plan_id="plan-1")

        daemon.process_command(command_file)

        service.pause_plan.assert_called_once_with("plan-1")
        assert not command_file.exists()
        processed = _processed(test_config, "cmd-1.json")
        assert processed["result"] == "accepted"
        assert processed["processed_at"]

    @pytest.mark.parametrize("command, method, key", [
        ("execute_plan", "execute_plan", "plan_id"),
        ("approve_plan", "approve_plan", "plan_id"),
        ("resume_plan", "resume_plan", "plan_id"),
        ("cancel_plan", "cancel_plan", "plan_id"),
        ("cancel_job", "cancel_job", "job_id"),
    ])
    def test_command_routing(self, daemon, service, test_config, command, method, key):
        """Should route each command type to its operation."""
        command_file = _write_command(test_config, "cmd.json", command=command, **{key: "id-1"})

        daemon.process_command(command_file)

        getattr(service, method).assert_called_once_with("id-1")

    def test_rejected_command(self, daemon, service, test_config):
        """Should record the error when the operation fails."""
        service.execute_plan.side_effect = ApprovalRequiredError("plan-1")
        command_file = _write_command(test_config, "cmd-2.json", command="execute_plan", plan_id="plan-1")

        daemon.process_command(command_file)

        processed = _processed(test_config, "cmd-2.json")
        assert processed["result"] == "rejected"
        assert "plan-1" in processed["error"]

    def test_missing_field(self, daemon, test_config):
        """Should reject commands without their target id."""
        command_file = _write_command(test_config, "cmd-3.json", command="cancel_job")

        daemon.process_command(command_file)

        assert _processed(test_config, "cmd-3.json")["result"] == "rejected"

    def test_unknown_command(self, daemon, test_config):
        """Should reject unknown commands."""
        command_file = _write_command(test_config, "cmd-4.json", command="reboot_everything")

        daemon.process_command(command_file)

        processed = _processed(test_config, "cmd-4.json")
        assert processed["result"] == "rejected"
        assert "unknown command" in processed["error"]

    def test_unreadable_command_left_in_place(self, daemon, service, test_config):
        """Should skip files that are not valid JSON."""
        command_file = test_config.get_path(constants.DIR_COMMANDS_INCOMING) / "broken.json"
        command_file.write_text("{")

        daemon.process_command(command_file)

        assert command_file.exists()
        assert service.method_calls == []

    def test_handler_ignores_hidden_files(self, daemon, test_config):
        """Should only react to visible JSON files."""
        daemon.process_command = Mock()
        handler = CommandQueueHandler(daemon)
        incoming = test_config.get_path(constants.DIR_COMMANDS_INCOMING)

        handler.on_created(Mock(is_directory=False, src_path=str(incoming / ".cmd.json.tmp")))
        handler.on_created(Mock(is_directory=False, src_path=str(incoming / "cmd.json")))

        daemon.process_command.assert_called_once_with(incoming / "cmd.json")


class TestScheduler:
    """Test starting scheduled plans."""

    def test_starts_due_plans_only(self, daemon, service):
        """Should start scheduled plans whose start time passed."""
        service.list_plans.return_value = [
            _plan("plan-due", scheduled_start="2020-01-01T00:00:00+00:00"),
            _plan("plan-later", scheduled_start="2999-01-01T00:00:00+00:00"),
            _plan("plan-immediate", strategy="immediate", scheduled_start=None),
        ]

        daemon.start_due_plans()

        service.list_plans.assert_called_once_with(PlanStatus.APPROVED.value)
        service.execute_plan.assert_called_once_with("plan-due")

    def test_service_uses_daemon_pool(self, daemon, service):
        """Should run plans on the daemon's worker pool."""
        assert service.worker_pool is daemon.worker_pool
        assert daemon.worker_pool.num_workers == 2
