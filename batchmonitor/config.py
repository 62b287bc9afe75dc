"""Monitor configuration loading and strict validation."""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from batchmonitor.exceptions import ValidationError, ConfigValidationError


@dataclass
class TopicConfig:
    """Notification topic names."""
    status: str = "/topic/status"
    progress: str = "/topic/progress"
    console: str = "/topic/console"


@dataclass
class MonitorConfig:
    """
    Runtime settings consumed by the execution pipeline.

    Attributes:
        scripts_dir: Base directory for scripts; also the child working directory
        default_script: Script run when a request names none
        timeout_sec: Wall-clock bound for a single run
        logs_dir: Directory for per-run output-capture files
        state_dir: Directory for persisted execution records
        max_concurrent: Number of runs allowed in flight at once
        drain_join_timeout_sec: Bounded wait for stream drains after exit
        poll_interval_ms: Granularity of the exit/cancel/output loop
        message_limit: Maximum characters kept per log line
        topics: Notification topic names
    """
    scripts_dir: Path = Path("scripts")
    default_script: str = "batch.sh"
    timeout_sec: float = 3600
    logs_dir: Path = Path("logs")
    state_dir: Path = Path(".batchmonitor")
    max_concurrent: int = 5
    drain_join_timeout_sec: float = 5
    poll_interval_ms: int = 100
    message_limit: int = 2000
    topics: TopicConfig = field(default_factory=TopicConfig)

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    def with_overrides(self, **overrides: Any) -> "MonitorConfig":
        """Return a copy with non-None overrides applied (CLI flags)."""
        values = {key: value for key, value in overrides.items() if value is not None}
        for key in ("scripts_dir", "logs_dir", "state_dir"):
            if key in values:
                values[key] = Path(values[key])
        return replace(self, **values)


class ConfigLoader:
    """Loads and validates monitor configuration YAML."""

    PATH_KEYS = {"scripts_dir", "logs_dir", "state_dir"}
    POSITIVE_NUMBER_KEYS = {"timeout_sec", "drain_join_timeout_sec"}
    POSITIVE_INT_KEYS = {"max_concurrent", "poll_interval_ms", "message_limit"}
    STRING_KEYS = {"default_script"}

    def __init__(self, base_dir: Optional[Path] = None):
        """Initialize loader; relative paths resolve against ``base_dir``."""
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.errors: List[ValidationError] = []

    def load(self, config_path: Union[str, Path]) -> MonitorConfig:
        """Load and validate a configuration file."""
        config_path = Path(config_path)
        if self.base_dir is None:
            self.base_dir = config_path.parent

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load config: {e}")
            self._raise_validation_errors()

        if data is None:
            data = {}
        if not isinstance(data, dict):
            self._add_error("Config must be a YAML object/dictionary")
            self._raise_validation_errors()

        return self.from_dict(data)

    def from_dict(self, data: Dict[str, Any]) -> MonitorConfig:
        """Build a config from an already parsed mapping."""
        known = {f.name for f in fields(MonitorConfig)}
        values: Dict[str, Any] = {}

        for key, value in data.items():
            if key not in known:
                self._add_error(f"Unknown config key '{key}'", path=str(key))
                continue

            if key == "topics":
                values["topics"] = self._validate_topics(value)
            elif key in self.PATH_KEYS:
                if not isinstance(value, str) or not value.strip():
                    self._add_error("must be a non-empty path string", path=key)
                    continue
                values[key] = self._resolve_path(value)
            elif key in self.STRING_KEYS:
                if not isinstance(value, str) or not value.strip():
                    self._add_error("must be a non-empty string", path=key)
                    continue
                values[key] = value
            elif key in self.POSITIVE_INT_KEYS:
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    self._add_error(f"must be a positive integer, got {value!r}", path=key)
                    continue
                values[key] = value
            elif key in self.POSITIVE_NUMBER_KEYS:
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    self._add_error(f"must be a positive number, got {value!r}", path=key)
                    continue
                values[key] = value

        self._raise_validation_errors()
        return MonitorConfig(**values)

    def _validate_topics(self, value: Any) -> TopicConfig:
        topics = TopicConfig()
        if not isinstance(value, dict):
            self._add_error("must be a mapping of topic names", path="topics")
            return topics

        known = {f.name for f in fields(TopicConfig)}
        for key, name in value.items():
            if key not in known:
                self._add_error(f"Unknown topic '{key}'", path=f"topics.{key}")
            elif not isinstance(name, str) or not name:
                self._add_error("must be a non-empty string", path=f"topics.{key}")
            else:
                setattr(topics, key, name)
        return topics

    def _resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    def _add_error(self, message: str, path: str = "") -> None:
        self.errors.append(ValidationError(message=message, path=path))

    def _raise_validation_errors(self) -> None:
        if self.errors:
            raise ConfigValidationError(self.errors)


def load_config(config_path: Optional[Union[str, Path]] = None) -> MonitorConfig:
    """Load configuration from ``config_path``, or defaults when None."""
    if config_path is None:
        return MonitorConfig()
    return ConfigLoader().load(config_path)
