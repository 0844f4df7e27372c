"""
Configuration management for pyplayground.
"""

import json
import multiprocessing
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

DEFAULT_SNIPPET = """# Python Playground Demo
print("Hello, Python!")


def greet(name):
    return "Hello, " + name + "!"


print(greet("World"))
"""


@dataclass
class SandboxConfig:
    """Isolated execution context configuration."""

    start_method: str = "spawn"  # spawn | forkserver | fork
    echo_output: bool = True  # Also write captured prints to the guest's real stdout
    terminate_on_cancel: bool = True  # Hard-kill superseded contexts instead of abandoning them
    poll_interval_seconds: float = 0.05
    terminate_grace_seconds: float = 1.0
    env_allowlist: list[str] = field(default_factory=list)
    filename: str = "<playground>"

    def validate(self) -> None:
        """Raise ConfigurationError when a value cannot be used."""
        for name in ("start_method", "filename"):
            if not isinstance(getattr(self, name), str):
                raise ConfigurationError(f"sandbox.{name} must be a string")
        for name in ("echo_output", "terminate_on_cancel"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigurationError(f"sandbox.{name} must be true or false")
        for name in ("poll_interval_seconds", "terminate_grace_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"sandbox.{name} must be a number")
        if not all(isinstance(item, str) for item in self.env_allowlist):
            raise ConfigurationError("sandbox.env_allowlist must be a list of names")

        available = multiprocessing.get_all_start_methods()
        if self.start_method not in available:
            raise ConfigurationError(
                f"Unsupported start method '{self.start_method}'. "
                f"Available: {', '.join(available)}"
            )
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("sandbox.poll_interval_seconds must be positive")
        if self.terminate_grace_seconds < 0:
            raise ConfigurationError("sandbox.terminate_grace_seconds must not be negative")
        if not self.filename:
            raise ConfigurationError("sandbox.filename must not be empty")


@dataclass
class PlaygroundConfig:
    """Main playground configuration."""

    name: str = "pyplayground"
    log_level: str = "INFO"
    default_snippet: str = DEFAULT_SNIPPET
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    def validate(self) -> None:
        """Validate nested configuration sections."""
        for name in ("name", "log_level", "default_snippet"):
            if not isinstance(getattr(self, name), str):
                raise ConfigurationError(f"{name} must be a string")
        self.sandbox.validate()

    @classmethod
    def load_from_file(cls, config_path: Path) -> "PlaygroundConfig":
        """Load configuration from a YAML or JSON file."""
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path) as f:
                if config_path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        config = cls.from_dict(data or {})
        config.validate()
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaygroundConfig":
        """Build a configuration from plain data, ignoring unknown keys."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        sandbox_data = data.get("sandbox") or {}
        if not isinstance(sandbox_data, dict):
            raise ConfigurationError("'sandbox' section must be a mapping")

        sandbox_fields = {f.name for f in fields(SandboxConfig)}
        sandbox_kwargs = {k: v for k, v in sandbox_data.items() if k in sandbox_fields}
        allowlist = sandbox_kwargs.get("env_allowlist", [])
        if isinstance(allowlist, str):
            sandbox_kwargs["env_allowlist"] = [allowlist]
        elif isinstance(allowlist, list):
            sandbox_kwargs["env_allowlist"] = [
                str(item).strip() for item in allowlist if str(item).strip()
            ]
        else:
            raise ConfigurationError("sandbox.env_allowlist must be a list of names")

        try:
            sandbox = SandboxConfig(**sandbox_kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Invalid sandbox configuration: {e}") from e

        valid_fields = {"name", "log_level", "default_snippet"}
        filtered_data = {k: v for k, v in data.items() if k in valid_fields}
        return cls(sandbox=sandbox, **filtered_data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def save_to_file(self, config_path: Path) -> None:
        """
        Save configuration to file.

        Args:
            config_path: Destination path; ``.json`` selects JSON, anything else YAML
        """
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w") as f:
                if config_path.suffix.lower() == ".json":
                    json.dump(self.to_dict(), f, indent=2)
                else:
                    yaml.safe_dump(self.to_dict(), f, default_flow_style=False, indent=2)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e
