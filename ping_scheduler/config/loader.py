"""
Configuration management and loading.

Handles scheduler settings read from a YAML file.
"""

import os
from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml

DEFAULT_CONFIG_PATH = "ping_scheduler.yaml"


class ScheduleMode(Enum):
    """When regular pings are allowed to fire."""
    ALL_DAY = "all_day"
    TIME_WINDOW = "time_window"


class PingMethod(Enum):
    """How a ping attempt is performed.

    ``api`` goes through the claude.ai web session (needs the usage
    credentials); ``openai`` targets an OpenAI-compatible endpoint and needs
    ``api_base_url``.
    """
    CLI = "cli"
    API = "api"
    OPENAI = "openai"


@dataclass(frozen=True)
class ScheduleSettings:
    """Regular ping schedule."""
    enabled: bool = False
    mode: ScheduleMode = ScheduleMode.ALL_DAY
    interval_minutes: int = 60
    window_start: time = time(6, 0)
    window_end: time = time(10, 0)

    def __post_init__(self):
        """Validate interval is positive."""
        if self.interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0


@dataclass(frozen=True)
class TriggerSettings:
    """Extra ping triggers besides the regular interval."""
    ping_on_wake: bool = True
    ping_on_startup: bool = True


@dataclass(frozen=True)
class PingSettings:
    """What a ping sends and how."""
    prompt: str = "hi"
    model: str = "haiku"
    method: PingMethod = PingMethod.CLI
    claude_path: str = "/usr/local/bin/claude"
    api_base_url: Optional[str] = None

    def __post_init__(self):
        if not self.prompt.strip():
            raise ValueError("prompt cannot be empty")
        if not self.model.strip():
            raise ValueError("model cannot be empty")
        if self.method is PingMethod.OPENAI and not (self.api_base_url or "").strip():
            raise ValueError("api_base_url is required when method is openai")


@dataclass(frozen=True)
class UsageSettings:
    """Usage API polling."""
    poll_seconds: int = 60
    org_id: str = ""
    session_key_env: str = "CLAUDE_SESSION_KEY"

    def __post_init__(self):
        if self.poll_seconds <= 0:
            raise ValueError("poll_seconds must be > 0")

    @property
    def session_key(self) -> str:
        return os.environ.get(self.session_key_env, "")

    @property
    def enabled(self) -> bool:
        """Whether enough is configured to poll the usage API."""
        return bool(self.org_id) and bool(self.session_key)


@dataclass(frozen=True)
class StorageSettings:
    """Where samples, history and logs live."""
    db_path: str = "ping_scheduler.db"
    log_file: Optional[str] = "ping_scheduler.log"
    max_log_size_mb: int = 10

    def __post_init__(self):
        if self.max_log_size_mb <= 0:
            raise ValueError("max_log_size_mb must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete settings tree, read-only for the engine."""
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    triggers: TriggerSettings = field(default_factory=TriggerSettings)
    ping: PingSettings = field(default_factory=PingSettings)
    usage: UsageSettings = field(default_factory=UsageSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)


_SECTION_KEYS: Dict[str, Set[str]] = {
    "schedule": {"enabled", "mode", "interval_minutes", "window_start", "window_end"},
    "triggers": {"ping_on_wake", "ping_on_startup"},
    "ping": {"prompt", "model", "method", "claude_path", "api_base_url"},
    "usage": {"poll_seconds", "org_id", "session_key_env"},
    "storage": {"db_path", "log_file", "max_log_size_mb"},
}


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures a typo cannot silently fall back to a default
    and leave the schedule in an unexpected state. Sections that are absent
    take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping of sections")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, allowed in _SECTION_KEYS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValueError(f"Unknown keys in {name}: {unknown}")
        sections[name] = data

    return Settings(
        schedule=_parse_schedule(sections["schedule"]),
        triggers=TriggerSettings(
            ping_on_wake=_bool(sections["triggers"], "ping_on_wake", True, "triggers"),
            ping_on_startup=_bool(sections["triggers"], "ping_on_startup", True, "triggers"),
        ),
        ping=_parse_ping(sections["ping"]),
        usage=UsageSettings(
            poll_seconds=_int(sections["usage"], "poll_seconds", 60, "usage"),
            org_id=_str(sections["usage"], "org_id", "", "usage"),
            session_key_env=_str(sections["usage"], "session_key_env", "CLAUDE_SESSION_KEY", "usage"),
        ),
        storage=StorageSettings(
            db_path=_str(sections["storage"], "db_path", "ping_scheduler.db", "storage"),
            log_file=_optional_str(sections["storage"], "log_file", "ping_scheduler.log", "storage"),
            max_log_size_mb=_int(sections["storage"], "max_log_size_mb", 10, "storage"),
        ),
    )


def parse_time_of_day(value: Any, path: str) -> time:
    """Parse an ``HH:MM`` string into a time.

    Args:
        value: Raw configuration value
        path: Path for error messages

    Raises:
        ValueError: If the value is not a valid 24-hour time
    """
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string in HH:MM format")
    try:
        hour_str, minute_str = value.strip().split(":")
        return time(int(hour_str), int(minute_str))
    except ValueError:
        raise ValueError(f"'{path}' must be a valid HH:MM time, got {value!r}")


def _parse_schedule(data: Dict) -> ScheduleSettings:
    mode_str = _str(data, "mode", ScheduleMode.ALL_DAY.value, "schedule")
    try:
        mode = ScheduleMode(mode_str.lower())
    except ValueError:
        valid_modes = [mode.value for mode in ScheduleMode]
        raise ValueError(f"'mode' in schedule must be one of: {valid_modes}")

    interval = _int(data, "interval_minutes", 60, "schedule")
    if interval <= 0:
        raise ValueError("'interval_minutes' in schedule must be > 0")

    return ScheduleSettings(
        enabled=_bool(data, "enabled", False, "schedule"),
        mode=mode,
        interval_minutes=interval,
        window_start=parse_time_of_day(data.get("window_start", "06:00"), "schedule.window_start"),
        window_end=parse_time_of_day(data.get("window_end", "10:00"), "schedule.window_end"),
    )


def _parse_ping(data: Dict) -> PingSettings:
    method_str = _str(data, "method", PingMethod.CLI.value, "ping")
    try:
        method = PingMethod(method_str.lower())
    except ValueError:
        valid_methods = [method.value for method in PingMethod]
        raise ValueError(f"'method' in ping must be one of: {valid_methods}")

    return PingSettings(
        prompt=_str(data, "prompt", "hi", "ping"),
        model=_str(data, "model", "haiku", "ping"),
        method=method,
        claude_path=_str(data, "claude_path", "/usr/local/bin/claude", "ping"),
        api_base_url=_optional_str(data, "api_base_url", None, "ping"),
    )


def _bool(data: Dict, key: str, default: bool, section: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {section} must be true or false")
    return value


def _int(data: Dict, key: str, default: int, section: str) -> int:
    value = data.get(key, default)
    # bool is a subclass of int; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {section} must be an integer")
    return value


def _str(data: Dict, key: str, default: str, section: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {section} must be a string")
    return value


def _optional_str(data: Dict, key: str, default: Optional[str], section: str) -> Optional[str]:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' in {section} must be a string")
    return value
