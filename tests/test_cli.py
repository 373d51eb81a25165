"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeExecutor
from ping_scheduler.cli.main import (
    app,
    build_executor,
    build_usage_client,
    build_usage_source,
    EXIT_CODE_PASS,
    EXIT_CODE_FAIL,
)
from ping_scheduler.config.loader import PingMethod, PingSettings, Settings, UsageSettings
from ping_scheduler.core.outcome import PingAttemptOutcome
from ping_scheduler.core.usage import UsageFeed
from ping_scheduler.sdk.cli_executor import ClaudeCliExecutor
from ping_scheduler.sdk.openai_executor import OpenAIPingExecutor
from ping_scheduler.sdk.usage_client import UsagePoller
from ping_scheduler.sdk.web_executor import ClaudeWebPingExecutor
from ping_scheduler.storage.models import Sample
from ping_scheduler.storage.repository import (
    PingHistoryRepository,
    SampleRepository,
    initialize_schema,
)

runner = CliRunner()


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        """Set up a settings file pointing at a temporary database."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.config_path = os.path.join(self.temp_dir, "settings.yaml")
        self._write_config({})

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, extra):
        data = {"storage": {"db_path": self.db_path, "log_file": None}}
        data.update(extra)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f)

    def _invoke(self, *args):
        return runner.invoke(app, [*args, "--config", self.config_path])

    def test_init_creates_database(self):
        """Test init command."""
        result = self._invoke("init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_invalid_config_fails(self):
        """A rejected settings file exits with failure."""
        self._write_config({"schedule": {"mode": "sometimes"}})
        result = self._invoke("schedule")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading settings" in result.output

    def test_schedule_all_day(self):
        self._write_config({"schedule": {"enabled": True, "interval_minutes": 30}})
        result = self._invoke("schedule")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Mode: all day" in result.output
        assert "Interval: 30 min" in result.output
        assert "Next ping:" in result.output

    def test_schedule_time_window(self):
        self._write_config({"schedule": {
            "mode": "time_window", "window_start": "22:00", "window_end": "02:00"
        }})
        result = self._invoke("schedule")

        assert result.exit_code == EXIT_CODE_PASS
        assert "time window 22:00-02:00" in result.output

    def test_history_empty(self):
        result = self._invoke("history")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No history yet" in result.output

    def test_history_lists_records(self):
        initialize_schema(self.db_path)
        repo = PingHistoryRepository(self.db_path)
        repo.record(PingAttemptOutcome.failure(
            datetime(2025, 1, 6, 8, 0), 1.0, "offline", trigger="wake"
        ))
        repo.record_event("System wake")

        result = self._invoke("history")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Ping History" in result.output
        assert "wake" in result.output
        assert "System wake" in result.output

        result = self._invoke("history", "--pings-only")
        assert "System wake" not in result.output

    def test_velocity_calculating(self):
        result = self._invoke("velocity")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage Velocity" in result.output
        assert "calculating..." in result.output

    def test_velocity_with_samples(self):
        initialize_schema(self.db_path)
        now = datetime.now()
        SampleRepository(self.db_path).save([
            Sample(now - timedelta(minutes=30), 10.0),
            Sample(now - timedelta(minutes=20), 20.0),
            Sample(now - timedelta(minutes=10), 30.0),
        ])

        result = self._invoke("velocity")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Session utilization: 30.0%" in result.output
        assert "Session velocity:" in result.output
        assert "Time remaining:" in result.output

    def test_ping_success_recorded_as_manual(self):
        executor = FakeExecutor()
        with patch("ping_scheduler.cli.main.build_executor", return_value=executor):
            result = self._invoke("ping")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Ping succeeded" in result.output
        assert executor.calls == [("hi", "haiku")]

        records = PingHistoryRepository(self.db_path).fetch_recent(include_system=False)
        assert [r.trigger for r in records] == ["manual"]

    def test_ping_failure(self):
        executor = FakeExecutor(results=["Exit code 1"])
        with patch("ping_scheduler.cli.main.build_executor", return_value=executor):
            result = self._invoke("ping")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Ping failed: Exit code 1" in result.output


class TestExecutorSelection:
    """Test executor and usage source wiring."""

    def _settings(self, method, api_base_url=None, org_id="org-1"):
        return Settings(
            ping=PingSettings(method=method, api_base_url=api_base_url),
            usage=UsageSettings(org_id=org_id, session_key_env="TEST_SESSION_KEY"),
        )

    def test_cli_method(self):
        executor = build_executor(self._settings(PingMethod.CLI))
        assert isinstance(executor, ClaudeCliExecutor)

    def test_api_method_shares_usage_client(self, monkeypatch):
        monkeypatch.setenv("TEST_SESSION_KEY", "sk-ant-123")
        settings = self._settings(PingMethod.API)
        client = build_usage_client(settings)

        executor = build_executor(settings, client)
        source = build_usage_source(settings, client)

        assert isinstance(executor, ClaudeWebPingExecutor)
        assert isinstance(source, UsagePoller)
        assert executor.client is client

    def test_api_method_needs_usage_credentials(self, monkeypatch):
        monkeypatch.delenv("TEST_SESSION_KEY", raising=False)
        settings = self._settings(PingMethod.API)

        assert build_usage_client(settings) is None
        with pytest.raises(ValueError, match="TEST_SESSION_KEY"):
            build_executor(settings)

    def test_openai_method(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test-key")
        executor = build_executor(self._settings(PingMethod.OPENAI, api_base_url="http://localhost:8080/v1"))
        assert isinstance(executor, OpenAIPingExecutor)

    def test_no_client_gives_silent_feed(self):
        source = build_usage_source(self._settings(PingMethod.CLI, org_id=""))
        assert type(source) is UsageFeed
