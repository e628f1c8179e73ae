"""Configuration management for deployctl using Pydantic."""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import pydantic
import yaml
from pydantic import BaseModel, Field, model_validator

from deployctl.core.exceptions import ConfigError
from deployctl.core.logging import LogLevel
from deployctl.core.output import OutputFormat
from deployctl.core.utils import get_state_dir


class RuntimeKind(str, Enum):
    """How the runtime descriptor is applied on the target."""

    COMPOSE = "compose"
    KUBERNETES = "kubernetes"


class SSHConfig(BaseModel):
    """Remote channel timeouts."""

    connect_timeout: float = 10.0
    command_timeout: float = 300.0


class ArtifactConfig(BaseModel):
    """Artifact build settings."""

    name: str | None = None
    source_dir: str = "."
    dockerfile: str | None = None
    context: str | None = None
    platform: str = "linux/amd64"
    exclude: list[str] = Field(
        default_factory=lambda: [".git", "node_modules", "__pycache__", ".venv", "dist", ".deployctl"]
    )


class HealthConfig(BaseModel):
    """Post-activation health verification."""

    endpoint: str | None = None
    attempts: int = Field(default=10, ge=1)
    interval: float = Field(default=3.0, ge=0)
    timeout: float = Field(default=10.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    initial_delay: float = Field(default=0.0, ge=0)
    indicator_field: str = "status"
    healthy_values: list[str] = Field(default_factory=lambda: ["healthy", "ok", "true"])
    check_liveness: bool = False

    @model_validator(mode="after")
    def validate_threshold(self) -> "HealthConfig":
        if self.success_threshold > self.attempts:
            raise ValueError("success_threshold cannot exceed attempts")
        return self


class TransferConfig(BaseModel):
    """Artifact transfer retry settings."""

    attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)


class RetentionConfig(BaseModel):
    """Artifact retention settings."""

    keep: int = Field(default=3, ge=1)


class LockConfig(BaseModel):
    """Per-target lock settings."""

    lease_seconds: int = Field(default=3600, ge=1)


class TargetConfig(BaseModel):
    """A deployment target, after defaults have been merged in."""

    host: str | None = None
    user: str = "ec2-user"
    port: int = 22
    ssh_key: str | None = None
    local: bool = False
    sudo: bool = False

    workdir: str | None = None
    descriptor: str | None = None
    env_file: str | None = None
    runtime: RuntimeKind = RuntimeKind.COMPOSE
    compose_command: str = "docker compose"
    namespace: str = "default"

    artifact: ArtifactConfig = Field(default_factory=ArtifactConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    lock: LockConfig = Field(default_factory=LockConfig)

    def get_ssh_key(self) -> str | None:
        """Get SSH key path from environment or config."""
        key = os.environ.get("DEPLOYCTL_SSH_KEY") or self.ssh_key
        return str(Path(key).expanduser()) if key else None

    def get_host(self) -> str | None:
        """Get host, allowing an environment override."""
        return os.environ.get("DEPLOYCTL_REMOTE_HOST") or self.host


class GlobalConfig(BaseModel):
    """Settings under the top-level ``global`` key."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: Literal["auto", "always", "never"] = "auto"
    verbosity: LogLevel = LogLevel.INFO
    state_dir: str | None = None
    confirm_destructive: bool = True

    def get_state_dir(self) -> Path:
        """Resolve the state directory, creating it if needed."""
        return get_state_dir(self.state_dir)


class DeployCtlConfig(BaseModel):
    """The layered configuration file: global settings, shared defaults and named targets."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    defaults: dict[str, Any] = Field(default_factory=dict)
    targets: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def target_names(self) -> list[str]:
        return sorted(self.targets)

    def get_target(self, name: str) -> TargetConfig:
        """Get a target by name with defaults merged underneath it."""
        if name not in self.targets:
            raise ConfigError(
                f"Target '{name}' not found",
                {"available": ", ".join(self.target_names()) or "none"},
            )

        merged = _deep_merge(self.defaults, self.targets[name] or {})
        try:
            return TargetConfig(**merged)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid configuration for target '{name}': {e}")


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """``override`` layered over ``base``; nested mappings merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


PROJECT_CONFIG_NAMES = ("deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml")


class ConfigLoader:
    """Reads the user, project and explicit config files and layers them.

    Later sources win: ``~/.deployctl/config.yaml``, then the nearest
    ``deployctl.yaml`` in the working directory or a parent, then the file
    named with ``--config``.
    """

    def __init__(self, user_config: Path | None = None):
        self.user_config = user_config or Path.home() / ".deployctl" / "config.yaml"

    def sources(self, config_file: str | Path | None = None) -> list[Path]:
        found = [path for path in (self.user_config, self.project_config()) if path and path.is_file()]
        if config_file:
            explicit = Path(config_file)
            if not explicit.is_file():
                raise ConfigError(f"Config file not found: {config_file}")
            found.append(explicit)
        return found

    def load(self, config_file: str | Path | None = None) -> DeployCtlConfig:
        layered: dict[str, Any] = {}
        for path in self.sources(config_file):
            layered = _deep_merge(layered, self.read(path))

        try:
            return DeployCtlConfig(**layered)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    @staticmethod
    def project_config() -> Path | None:
        cwd = Path.cwd()
        for directory in (cwd, *cwd.parents):
            for name in PROJECT_CONFIG_NAMES:
                if (directory / name).is_file():
                    return directory / name
        return None

    @staticmethod
    def read(path: Path) -> dict[str, Any]:
        try:
            document = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return document


def load_config(config_file: str | Path | None = None) -> DeployCtlConfig:
    """Configuration from the standard locations plus an optional explicit file."""
    return ConfigLoader().load(config_file)


def get_default_config() -> DeployCtlConfig:
    """Configuration with no files read, used when a command runs without the CLI group."""
    return DeployCtlConfig()
