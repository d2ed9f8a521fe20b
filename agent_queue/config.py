"""
Configuration management for agent-queue.

Handles loading, saving, and updating the queue configuration, plus the
environment overrides read from ~/.config/agent-queue/.env.
"""

import logging
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from agent_queue.atomic import AtomicFileWriter, FileLock
from agent_queue.models import QueueConfig, QueueSettings
from agent_queue.process_runner import RunnerSpec, claude_spec, codex_spec


logger = logging.getLogger(__name__)

# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agent-queue"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
ENV_FILE = DEFAULT_CONFIG_DIR / ".env"

# Environment variables
ENV_CONFIG = "AGENT_QUEUE_CONFIG"
ENV_QUEUE_DIR = "AGENT_QUEUE_DIR"
ENV_CODEX = "AGENT_QUEUE_CODEX"
ENV_CLAUDE = "AGENT_QUEUE_CLAUDE"
ENV_MAX_PARALLEL = "AGENT_QUEUE_MAX_PARALLEL"

_DURATION_RE = re.compile(r"^(\d+)([a-z]*)$")
_DURATION_UNITS = {
    "ms": 0.001,
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(value: str) -> timedelta:
    """
    Parse "<int><unit>" with unit in ms|s|m|h|d|w; a bare int is seconds.

    Raises:
        ValueError: For empty input, a non-integer amount or an unknown unit
    """
    text = str(value).strip()
    if not text:
        raise ValueError("empty duration")
    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"invalid duration: {text}")
    amount, unit = match.groups()
    if unit not in _DURATION_UNITS:
        raise ValueError(f"unsupported duration unit in '{text}' (use ms|s|m|h|d|w)")
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


def duration_seconds(value: str) -> float:
    return parse_duration(value).total_seconds()


def expand_path(value: str) -> Path:
    return Path(os.path.expandvars(value)).expanduser()


def load_env(env_file: Optional[Path] = None) -> None:
    """Load the .env file without overriding variables already set."""
    env_file = env_file or ENV_FILE
    if env_file.exists():
        load_dotenv(env_file, override=False)


class ConfigManager:
    """
    Manages agent-queue configuration.

    Handles loading configuration from disk, making updates,
    and persisting changes atomically. Environment overrides are applied
    to the in-memory view only and never written back.
    """

    def __init__(self, config_file: Optional[Path] = None, env_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to $AGENT_QUEUE_CONFIG
                or ~/.config/agent-queue/config.json
            env_file: .env file with overrides. Defaults to ~/.config/agent-queue/.env
        """
        load_env(env_file)

        if config_file is None and os.environ.get(ENV_CONFIG):
            config_file = expand_path(os.environ[ENV_CONFIG])
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE

        self.lock = FileLock(self.config_file.with_suffix(".lock"))

        self.stored = self._load_config()
        self.config = self._apply_env(self.stored.model_copy(deep=True))

    def _load_config(self) -> QueueConfig:
        """Load configuration from file or create default."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            return QueueConfig()

        try:
            return QueueConfig(**data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            return QueueConfig()

    @staticmethod
    def _apply_env(config: QueueConfig) -> QueueConfig:
        settings = config.settings
        if os.environ.get(ENV_QUEUE_DIR):
            settings.queue_dir = os.environ[ENV_QUEUE_DIR]
        if os.environ.get(ENV_CODEX):
            settings.codex_executable = os.environ[ENV_CODEX]
        if os.environ.get(ENV_CLAUDE):
            settings.claude_executable = os.environ[ENV_CLAUDE]
        if os.environ.get(ENV_MAX_PARALLEL):
            raw = os.environ[ENV_MAX_PARALLEL]
            try:
                parallel = int(raw)
            except ValueError:
                logger.warning(f"Ignoring {ENV_MAX_PARALLEL}={raw!r}: not an integer")
            else:
                if parallel >= 1:
                    settings.max_parallel = parallel
                else:
                    logger.warning(f"Ignoring {ENV_MAX_PARALLEL}={raw!r}: must be >= 1")
        return config

    def save_config(self) -> None:
        """Save configuration atomically with locking."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.lock.acquire(timeout=5):
            raise RuntimeError("Could not acquire config lock")

        try:
            AtomicFileWriter.write_model(self.config_file, self.stored)
        finally:
            self.lock.release()

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.stored = self._load_config()
        self.config = self._apply_env(self.stored.model_copy(deep=True))

    @property
    def settings(self) -> QueueSettings:
        return self.config.settings

    @property
    def queue_dir(self) -> Path:
        return expand_path(self.settings.queue_dir)

    @property
    def worktree_base_dir(self) -> Path:
        return expand_path(self.config.worktree.base_dir)

    # Settings management

    def update_settings(self, **kwargs) -> None:
        """
        Update and persist queue settings.

        Args:
            **kwargs: Settings to update (max_parallel, poll_interval, etc.)

        Raises:
            ValueError: For an unknown key or a value that fails validation
        """
        for key in kwargs:
            if key not in QueueSettings.model_fields:
                raise ValueError(f"Unknown setting: {key}")

        merged = {**self.stored.settings.model_dump(), **kwargs}
        settings = QueueSettings(**merged)
        for key in ("poll_interval", "codex_timeout", "claude_timeout", "verify_timeout"):
            parse_duration(getattr(settings, key))
        self.stored.settings = settings

        self.save_config()
        self.config = self._apply_env(self.stored.model_copy(deep=True))


def build_runner_specs(settings: QueueSettings) -> Dict[str, RunnerSpec]:
    """Runner specs keyed by lowercase runner name."""
    return {
        "codex": codex_spec(settings.codex_executable, duration_seconds(settings.codex_timeout)),
        "claude": claude_spec(settings.claude_executable, duration_seconds(settings.claude_timeout)),
    }


def get_default_config_manager() -> ConfigManager:
    """Get the default configuration manager."""
    return ConfigManager()
