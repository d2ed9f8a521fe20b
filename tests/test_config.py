"""Tests for configuration management."""

import json
import os
from datetime import timedelta
from pathlib import Path

import pytest

from agent_queue.config import (
    ConfigManager,
    build_runner_specs,
    duration_seconds,
    expand_path,
    parse_duration,
)
from agent_queue.models import MissingDependencyPolicy, QueueSettings


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("500ms", timedelta(milliseconds=500)),
            ("45", timedelta(seconds=45)),
            ("45s", timedelta(seconds=45)),
            ("5m", timedelta(minutes=5)),
            ("2h", timedelta(hours=2)),
            ("30d", timedelta(days=30)),
            ("1w", timedelta(weeks=1)),
            (" 10m ", timedelta(minutes=10)),
        ],
    )
    def test_valid(self, text, expected):
        """Test parsing valid durations."""
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "abc", "5x", "1.5h", "-5m", "m"])
    def test_invalid(self, text):
        """Test rejecting malformed durations."""
        with pytest.raises(ValueError):
            parse_duration(text)

    def test_duration_seconds(self):
        """Test duration seconds."""
        assert duration_seconds("2m") == 120.0


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_defaults_when_file_missing(self, temp_dir):
        """Test defaults when file missing."""
        manager = ConfigManager(temp_dir / "config.json")
        assert manager.settings.max_parallel == 3
        assert manager.settings.missing_dependency_policy == MissingDependencyPolicy.WAIT
        assert manager.queue_dir == Path.home() / ".config" / "agent-queue" / "tasks"

    def test_loads_file(self, temp_dir):
        """Test loads file."""
        config_file = temp_dir / "config.json"
        config_file.write_text(json.dumps({
            "version": "1.0",
            "settings": {"queue_dir": str(temp_dir / "q"), "max_parallel": 5, "missing_dependency_policy": "fail"},
            "worktree": {"base_dir": str(temp_dir / "wt")},
        }))
        manager = ConfigManager(config_file)
        assert manager.queue_dir == temp_dir / "q"
        assert manager.settings.max_parallel == 5
        assert manager.settings.missing_dependency_policy == MissingDependencyPolicy.FAIL
        assert manager.worktree_base_dir == temp_dir / "wt"

    def test_invalid_file_falls_back_to_defaults(self, temp_dir):
        """Test invalid file falls back to defaults."""
        config_file = temp_dir / "config.json"
        config_file.write_text(json.dumps({"settings": {"max_parallel": 0}}))
        assert ConfigManager(config_file).settings.max_parallel == 3

    def test_config_path_from_environment(self, temp_dir, monkeypatch):
        """Test config path from environment."""
        config_file = temp_dir / "custom.json"
        config_file.write_text(json.dumps({"settings": {"max_parallel": 7}}))
        monkeypatch.setenv("AGENT_QUEUE_CONFIG", str(config_file))
        manager = ConfigManager()
        assert manager.config_file == config_file
        assert manager.settings.max_parallel == 7

    def test_environment_overrides(self, temp_dir, monkeypatch):
        """Test environment overrides."""
        monkeypatch.setenv("AGENT_QUEUE_DIR", str(temp_dir / "env-queue"))
        monkeypatch.setenv("AGENT_QUEUE_CODEX", "/opt/bin/codex")
        monkeypatch.setenv("AGENT_QUEUE_CLAUDE", "/opt/bin/claude")
        monkeypatch.setenv("AGENT_QUEUE_MAX_PARALLEL", "6")
        manager = ConfigManager(temp_dir / "config.json")
        assert manager.queue_dir == temp_dir / "env-queue"
        assert manager.settings.codex_executable == "/opt/bin/codex"
        assert manager.settings.claude_executable == "/opt/bin/claude"
        assert manager.settings.max_parallel == 6
        # Overrides never reach the stored view
        assert manager.stored.settings.max_parallel == 3

    @pytest.mark.parametrize("raw", ["many", "0", "-2"])
    def test_invalid_parallel_override_ignored(self, temp_dir, monkeypatch, raw):
        """Test invalid parallel override ignored."""
        monkeypatch.setenv("AGENT_QUEUE_MAX_PARALLEL", raw)
        assert ConfigManager(temp_dir / "config.json").settings.max_parallel == 3

    def test_env_file(self, temp_dir):
        """Test env file."""
        env_file = temp_dir / ".env"
        env_file.write_text("AGENT_QUEUE_MAX_PARALLEL=4\n")
        try:
            manager = ConfigManager(temp_dir / "config.json", env_file=env_file)
            assert manager.settings.max_parallel == 4
        finally:
            os.environ.pop("AGENT_QUEUE_MAX_PARALLEL", None)

    def test_update_settings_persists(self, temp_dir):
        """Test update settings persists."""
        config_file = temp_dir / "config.json"
        manager = ConfigManager(config_file)
        manager.update_settings(max_parallel=2, poll_interval="1s")

        data = json.loads(config_file.read_text())
        assert data["settings"]["max_parallel"] == 2
        assert data["settings"]["poll_interval"] == "1s"
        assert ConfigManager(config_file).settings.max_parallel == 2

    def test_update_settings_rejects_unknown_key(self, temp_dir):
        """Test update settings rejects unknown key."""
        with pytest.raises(ValueError, match="Unknown setting: colour"):
            ConfigManager(temp_dir / "config.json").update_settings(colour="blue")

    def test_update_settings_rejects_bad_duration(self, temp_dir):
        """Test update settings rejects bad duration."""
        config_file = temp_dir / "config.json"
        with pytest.raises(ValueError):
            ConfigManager(config_file).update_settings(codex_timeout="forever")
        assert not config_file.exists()

    def test_update_settings_does_not_persist_env_overrides(self, temp_dir, monkeypatch):
        """Test update settings does not persist env overrides."""
        monkeypatch.setenv("AGENT_QUEUE_CODEX", "/env/codex")
        config_file = temp_dir / "config.json"
        ConfigManager(config_file).update_settings(max_parallel=4)
        assert json.loads(config_file.read_text())["settings"]["codex_executable"] == "codex"


class TestHelpers:
    """Tests for config helper functions."""

    def test_expand_path(self, monkeypatch):
        """Test expand path."""
        monkeypatch.setenv("AQ_TEST_ROOT", "/srv/data")
        assert expand_path("$AQ_TEST_ROOT/queue") == Path("/srv/data/queue")
        assert expand_path("~/q") == Path.home() / "q"

    def test_build_runner_specs(self):
        """Test build runner specs."""
        specs = build_runner_specs(QueueSettings())
        assert specs["codex"].executable == "codex"
        assert specs["codex"].timeout == 1800.0
        assert specs["claude"].name == "claude"
