"""Configuration management for shipyard.

Loads configuration from:
1. shipyard.toml (defaults)
2. .env file and environment variables (overrides)

The resulting Config is immutable and passed explicitly to the runner.
"""

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from dotenv import load_dotenv

CONFIG_FILENAME = "shipyard.toml"


class ConfigError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass(frozen=True)
class SourceConfig:
    """Source checkout configuration."""

    repo_url: str = ""  # Empty = use workdir as-is (no checkout)
    branch: str = "main"
    workdir: str = "."
    token: str = field(default="", repr=False)  # HTTPS token for private repositories
    timeout: int = 300


@dataclass(frozen=True)
class BuildConfig:
    """Image build configuration."""

    context: str = "."
    dockerfile: str = "Dockerfile"
    tag: str = ""  # Build identifier; BUILD_NUMBER or a timestamp when empty
    tag_latest: bool = False
    build_args: dict[str, str] = field(default_factory=dict)
    timeout: int = 900


@dataclass(frozen=True)
class RegistryConfig:
    """Registry and push configuration."""

    url: str = ""  # Registry host; empty for local-only images
    repository: str = ""  # Image name without tag
    username: str = ""
    password: str = field(default="", repr=False)
    push: bool = True
    timeout: int = 300


@dataclass(frozen=True)
class DeployConfig:
    """Kubernetes deployment configuration."""

    deployment: str = ""
    namespace: str = "default"
    context: str = ""
    container: str = ""  # Defaults to the deployment name
    manifest: str = ""  # Applied before the image update when set
    kubeconfig: str = ""
    replicas: int = 0  # 0 = use the deployment's spec.replicas
    timeout: int = 120
    rollback_enabled: bool = True
    prior_tag: str = ""  # Overrides the deployment history
    health_check_url: str = ""
    health_check_timeout: int = 10


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy configuration."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.5


@dataclass(frozen=True)
class RolloutConfig:
    """Rollout monitoring configuration."""

    poll_interval: float = 2.0
    timeout: float = 300.0
    verify_timeout: float = 30.0
    status_timeout: int = 15
    max_consecutive_poll_failures: int = 3


@dataclass(frozen=True)
class PipelineConfig:
    """Pipeline execution configuration."""

    runs_dir: str = ".shipyard/runs"
    history_file: str = ".shipyard/history.json"
    log_level: str = "INFO"
    max_concurrency: int = 4


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    source: SourceConfig = field(default_factory=SourceConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary.

        Raises:
            ConfigError: On unknown sections/keys or wrongly typed values
        """
        sections = {f.name for f in fields(cls)}
        unknown = set(data) - sections
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

        return cls(
            source=_build_section(SourceConfig, data.get("source", {}), "source"),
            build=_build_section(BuildConfig, data.get("build", {}), "build"),
            registry=_build_section(RegistryConfig, data.get("registry", {}), "registry"),
            deploy=_build_section(DeployConfig, data.get("deploy", {}), "deploy"),
            retry=_build_section(RetryConfig, data.get("retry", {}), "retry"),
            rollout=_build_section(RolloutConfig, data.get("rollout", {}), "rollout"),
            pipeline=_build_section(PipelineConfig, data.get("pipeline", {}), "pipeline"),
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Flatten to ``{section: {key: value}}`` with secrets masked."""
        result: dict[str, dict[str, Any]] = {}
        for section in fields(self):
            values = {}
            for f in fields(getattr(self, section.name)):
                value = getattr(getattr(self, section.name), f.name)
                if f.name in ("password", "token") and value:
                    value = "********"
                values[f.name] = value
            result[section.name] = values
        return result


_SCALAR_TYPES = {"str": str, "int": int, "float": float, "bool": bool}


def _build_section(cls: type, data: Any, name: str) -> Any:
    """Construct one config section, checking keys and scalar types."""
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table")

    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for key, value in data.items():
        type_name = known[key].type if isinstance(known[key].type, str) else known[key].type.__name__
        expected = _SCALAR_TYPES.get(type_name)
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        elif expected is not None and (
            not isinstance(value, expected) or (expected is int and isinstance(value, bool))
        ):
            raise ConfigError(
                f"[{name}].{key} must be {type_name}, got {type(value).__name__}"
            )
        elif expected is None and not isinstance(value, dict):
            raise ConfigError(f"[{name}].{key} must be a table")
        values[key] = value

    return cls(**values)


def find_config_file() -> Path | None:
    """Find shipyard.toml in current or parent directories.

    Returns:
        Path to shipyard.toml or None if not found.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_path = directory / CONFIG_FILENAME
        if config_path.exists():
            return config_path

    return None


def load_config(config_path: Path | str | None = None, env_file: Path | str | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Optional explicit path to shipyard.toml
        env_file: Optional .env file (default: search from cwd)

    Returns:
        Config object with merged settings.

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    load_dotenv(env_file)

    # Start with defaults
    config_data: dict[str, Any] = {}

    # Load from file if available
    if config_path is None:
        config_path = find_config_file()
    elif not Path(config_path).exists():
        raise ConfigError(f"Config file not found: {config_path}")

    if config_path is not None:
        try:
            with open(config_path, "rb") as f:
                config_data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    # Apply environment variable overrides
    env_overrides = {
        "source": {
            "repo_url": os.getenv("SHIPYARD_REPO_URL"),
            "branch": os.getenv("SHIPYARD_BRANCH"),
            "token": os.getenv("GIT_TOKEN"),
        },
        "build": {
            "tag": os.getenv("BUILD_NUMBER"),
        },
        "registry": {
            "url": os.getenv("SHIPYARD_REGISTRY"),
            "repository": os.getenv("SHIPYARD_IMAGE"),
            "username": os.getenv("REGISTRY_USERNAME"),
            "password": os.getenv("REGISTRY_PASSWORD"),
        },
        "deploy": {
            "context": os.getenv("KUBE_CONTEXT"),
            "namespace": os.getenv("KUBE_NAMESPACE"),
        },
        "pipeline": {
            "runs_dir": os.getenv("SHIPYARD_RUNS_DIR"),
            "log_level": os.getenv("SHIPYARD_LOG_LEVEL"),
        },
    }

    # Merge env overrides (only non-None values)
    for section, values in env_overrides.items():
        if section not in config_data:
            config_data[section] = {}
        for key, value in values.items():
            if value is not None:
                config_data[section][key] = value

    return Config.from_dict(config_data)
