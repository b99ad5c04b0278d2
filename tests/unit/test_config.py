"""Tests for configuration, work directory resolution and logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest

from firmware_rollout import constants
from firmware_rollout.config import Config, get_config
from firmware_rollout.logging_config import JSONFormatter, get_logger, log_with_context, setup_logging
from firmware_rollout.work_dir_resolver import (
    ENV_VAR_NAME, ConfigSource, resolve_work_dir, write_user_config
)


class TestConfig:
    """Test Config loading and persistence."""

    def test_file_values_override_defaults(self, test_config):
        """Should merge the file over the defaults."""
        assert test_config.enabled_protocols == ["redfish", "racadm", "ipmi"]
        assert test_config.get("protocols.probe_timeout") == 5
        assert test_config.get("protocols.racadm_path") == constants.DEFAULT_RACADM_PATH
        assert test_config.min_active_overrides == {"prod-01": 2}

    def test_default_paths_inside_work_dir(self, test_config, test_work_dir):
        """Should place data files under the work directory."""
        assert test_config.catalog_file == test_work_dir / "config" / "catalog.yaml"
        assert test_config.inventory_file == test_work_dir / "inventory" / "hosts.json"
        assert (test_work_dir / constants.DIR_COMMANDS_INCOMING).is_dir()
        assert (test_work_dir / constants.DIR_LOGS_EXECUTION).is_dir()

    def test_set_persists(self, test_config):
        """Should save changes to the config file."""
        test_config.set("vcenter.url", "https://vcenter.example.com")

        reloaded = Config(config_file=test_config.config_file, work_dir=test_config.work_dir)

        assert reloaded.vcenter_url == "https://vcenter.example.com"
        assert reloaded.get("protocols.probe_timeout") == 5

    def test_missing_key_default(self, test_config):
        """Should return the default for unknown keys."""
        assert test_config.get("vcenter.nope", "fallback") == "fallback"

    def test_max_workers_capped(self, test_config):
        """Should never exceed the worker limit."""
        test_config.set("workers.max", 500)

        assert test_config.max_workers == constants.MAX_WORKERS

    def test_invalid_file(self, test_work_dir):
        """Should refuse a config file that is not JSON."""
        config_file = test_work_dir / "config" / "config.json"
        config_file.write_text("{broken")

        with pytest.raises(ValueError):
            Config(config_file=config_file, work_dir=test_work_dir)

    def test_global_instance(self, test_work_dir):
        """Should build the global config once."""
        first = get_config(work_dir=test_work_dir)

        assert get_config() is first


class TestWorkDirResolver:
    """Test work directory priority order."""

    @pytest.fixture(autouse=True)
    def isolated_home(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        home.mkdir()
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))
        monkeypatch.delenv(ENV_VAR_NAME, raising=False)
        return home

    def test_cli_flag_wins(self, tmp_path, monkeypatch):
        """Should prefer the --work-dir flag."""
        monkeypatch.setenv(ENV_VAR_NAME, str(tmp_path / "env"))

        resolution = resolve_work_dir(str(tmp_path / "cli"))

        assert resolution.path == (tmp_path / "cli").resolve()
        assert resolution.source == ConfigSource.CLI_FLAG

    def test_environment_variable(self, tmp_path, monkeypatch):
        """Should use the environment variable without a flag."""
        monkeypatch.setenv(ENV_VAR_NAME, str(tmp_path / "env"))

        resolution = resolve_work_dir()

        assert resolution.source == ConfigSource.ENV_VAR
        assert "environment variable" in resolution.log_message()

    def test_user_config(self, tmp_path, isolated_home):
        """Should read the per-user pointer file."""
        pointer = write_user_config(tmp_path / "recorded")

        resolution = resolve_work_dir()

        assert pointer.parent == isolated_home
        assert resolution.path == (tmp_path / "recorded").resolve()
        assert resolution.source == ConfigSource.USER_CONFIG

    def test_default(self, isolated_home):
        """Should fall back to the default directory."""
        (isolated_home / ".firmware-rollout.config.json").write_text("not json")

        resolution = resolve_work_dir()

        assert resolution.path == constants.DEFAULT_WORK_DIR
        assert resolution.source == ConfigSource.DEFAULT


class TestLogging:
    """Test the dual logging setup."""

    @pytest.fixture(autouse=True)
    def restore_handlers(self):
        logger = logging.getLogger("firmware_rollout")
        handlers, level = list(logger.handlers), logger.level
        yield
        for handler in logger.handlers:
            handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)

    def test_writes_json_and_text(self, tmp_path):
        """Should write both log files with context fields in the JSON one."""
        setup_logging(tmp_path, "DEBUG", console_output=False)
        logger = get_logger("firmware_rollout.executor")

        log_with_context(logger, "warning", "Host failed", host_id="esx-001", plan_id="plan-1")
        for handler in logging.getLogger("firmware_rollout").handlers:
            handler.flush()

        json_lines = next((tmp_path / "structured").glob("*.json")).read_text().splitlines()
        entry = json.loads(json_lines[-1])
        assert entry["message"] == "Host failed"
        assert entry["host_id"] == "esx-001"
        assert entry["plan_id"] == "plan-1"
        assert "job_id" not in entry
        assert "Host failed" in next((tmp_path / "text").glob("*.log")).read_text()

    def test_json_formatter_includes_exception(self):
        """Should serialise exception tracebacks."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("firmware_rollout", logging.ERROR, __file__, 1, "failed", None,
                                       exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "ERROR"
        assert "RuntimeError: boom" in entry["exception"]
