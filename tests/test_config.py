"""
Test suite for configuration and logging setup
"""

import json
import logging

from docflow import config as config_module
from docflow.config import DocflowConfig
from docflow.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self):
        settings = DocflowConfig(_env_file=None)

        assert settings.storage_backend == "sqlite"
        assert settings.default_sla_hours == 24
        assert settings.sla_warning_thresholds == {50: 8, 75: 2}

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DOCFLOW_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("DOCFLOW_DEFAULT_SLA_HOURS", "8")
        monkeypatch.setenv("DOCFLOW_MANAGER_ROLES", '["supervisor"]')

        settings = DocflowConfig(_env_file=None)

        assert settings.storage_backend == "memory"
        assert settings.default_sla_hours == 8
        assert settings.manager_roles == ["supervisor"]


class TestLogging:
    """Test structured log output"""

    def test_json_formatter(self):
        record = logging.LogRecord("docflow.tasks", logging.INFO, __file__, 1,
                                   "Task %s claimed", ("T1",), None)
        record.user_id = "U1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Task T1 claimed"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "U1"
        assert "action" not in entry

    def test_setup_logging_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "docflow.log"

        setup_logging("DEBUG", logger_name="docflow.test", fmt="text", log_file=str(log_file))
        logger = setup_logging("DEBUG", logger_name="docflow.test", fmt="text", log_file=str(log_file))
        logger.debug("hello")
        for handler in logger.handlers:
            handler.flush()

        assert len(logger.handlers) == 1
        assert not logger.propagate
        assert "DEBUG [docflow.test] hello" in log_file.read_text()

        logger.handlers[0].close()
        logger.removeHandler(logger.handlers[0])

    def test_log_action_attaches_fields(self, caplog):
        logger = logging.getLogger("structured.actions")

        with caplog.at_level(logging.INFO, logger="structured.actions"):
            log_action(logger, "info", "Task claimed", user_id="U1", action="task_claimed",
                       resource="workflow_task:T1")
            log_action(logger, "debug", "Not emitted")

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.action == "task_claimed"
        assert record.resource == "workflow_task:T1"
        assert "correlation_id" not in record.__dict__


class TestReload:
    """Test the global settings instance"""

    def test_reload_picks_up_environment(self, monkeypatch):
        monkeypatch.setenv("DOCFLOW_JOB_MAX_ATTEMPTS", "7")

        settings = config_module.reload_config()

        assert settings.job_max_attempts == 7
        assert config_module.get_config() is settings

        monkeypatch.delenv("DOCFLOW_JOB_MAX_ATTEMPTS")
        config_module.reload_config()
