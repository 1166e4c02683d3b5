"""Configuration management for nodeforge.

Configuration is loaded from the following sources, later ones winning:
1. Default values
2. The first existing configuration file (or an explicit path)
3. Environment variables prefixed with ``NODEFORGE_`` (a ``.env`` file is honoured)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger("nodeforge.config")

DEFAULT_CONFIG_PATHS = [
    Path("/etc/nodeforge/config.yaml"),
    Path("~/.config/nodeforge/config.yaml").expanduser(),
    Path("nodeforge.yaml").absolute(),
]

# env var -> (section, field)
ENV_OVERRIDES = {
    "NODEFORGE_CONTAINERD_CONFIG_DIR": ("paths", "containerd_config_dir"),
    "NODEFORGE_REGISTRY_CONFIG_DIR": ("paths", "registry_config_dir"),
    "NODEFORGE_CONTAINERD_DATA_DIR": ("paths", "containerd_data_dir"),
    "NODEFORGE_CONTAINERD_SOCKET": ("paths", "containerd_socket"),
    "NODEFORGE_MANIFEST_DIR": ("paths", "manifest_dir"),
    "NODEFORGE_DOWNLOAD_DIR": ("paths", "download_dir"),
    "NODEFORGE_REPO_MIRROR": ("registry", "repo_mirror"),
    "NODEFORGE_PACKAGE_MIRROR": ("registry", "package_mirror"),
    "NODEFORGE_DOWNLOAD_TIMEOUT": ("registry", "download_timeout"),
    "NODEFORGE_LOG_LEVEL": ("logging", "level"),
}


class PathsConfig(BaseModel):
    """On-node locations written by the components."""
    containerd_config_dir: str = Field(default="/etc/containerd", description="Directory of config.toml")
    registry_config_dir: str = Field(default="/etc/containerd/certs.d", description="Per-host trust store root")
    containerd_data_dir: str = Field(default="/var/lib/containerd", description="Default containerd root")
    containerd_run_dir: str = Field(default="/run/containerd")
    containerd_socket: str = Field(default="/run/containerd/containerd.sock")
    manifest_dir: str = Field(default="/tmp/.cni", description="Where rendered CNI manifests are written")
    download_dir: str = Field(default="/tmp", description="Base directory for downloaded packages")

    @field_validator("*")
    @classmethod
    def expand_user(cls, v: str) -> str:
        return os.path.expanduser(v)


class RegistryConfig(BaseModel):
    """Image and package sources."""
    repo_mirror: str = Field(default="", description="Image mirror used online when no local registry is set")
    package_mirror: str = Field(default="", description="Base URL packages are downloaded from when online")
    download_timeout: int = Field(default=300, description="Package download timeout in seconds")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")

    @field_validator("level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level {v}")
        return level


class NodeforgeConfig(BaseModel):
    """Top level configuration."""
    paths: PathsConfig = Field(default_factory=PathsConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'NodeforgeConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if not config_path.exists():
                raise ConfigurationError(f"Configuration file not found: {config_path}")
            config_data = cls._load_config_file(config_path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        for env, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(env)
            if value:
                config_data.setdefault(section, {})[key] = value

        try:
            return cls(**config_data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[NodeforgeConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> NodeforgeConfig:
    """Get or create the process configuration instance."""
    global _config
    if _config is None:
        _config = NodeforgeConfig.load(config_path)
    return _config


def set_config(config: Optional[NodeforgeConfig]) -> None:
    """Set (or with None, reset) the process configuration instance."""
    global _config
    _config = config
