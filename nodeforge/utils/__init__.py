"""Utility helpers shared by nodeforge components."""
import json
import logging
from typing import Any, Dict

import yaml

from ..errors import ConfigurationError

REDACT_KEYS = ("password", "secret", "token")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key in k.lower()
                for redact_key in REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def log_payload(logger: logging.Logger, message: str, data: Any) -> None:
    """Log a component payload at debug level with secrets removed."""
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"{message}: {json.dumps(redact_sensitive_data(data), default=str)}")


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML (or JSON) document that must be a mapping."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data
