"""Credentials for the management cluster that holds node and registry objects."""
import os
import tempfile
from pathlib import Path
from typing import Optional

from kubernetes import config

from ..errors import ConfigurationError

KUBECONFIG_CONTENT_ENV = "NODEFORGE_KUBECONFIG_CONTENT"


def load_kubeconfig(path: Optional[str] = None) -> str:
    """
    Load management cluster credentials into the kubernetes client.

    Sources, first match wins: kubeconfig text in ``NODEFORGE_KUBECONFIG_CONTENT``,
    an explicit path, ``$KUBECONFIG`` or ``~/.kube/config``, the in-cluster
    service account.

    Returns:
        str: Description of the source that was used

    Raises:
        ConfigurationError: If no source yields usable credentials
    """
    content = os.environ.get(KUBECONFIG_CONTENT_ENV)
    if content:
        fd, tmp_path = tempfile.mkstemp(prefix="nodeforge-kubeconfig-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            config.load_kube_config(config_file=tmp_path)
        except config.ConfigException as e:
            raise ConfigurationError(f"Invalid kubeconfig in {KUBECONFIG_CONTENT_ENV}: {e}") from e
        finally:
            os.unlink(tmp_path)
        return KUBECONFIG_CONTENT_ENV

    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise ConfigurationError(f"Kubeconfig not found: {resolved}")
        try:
            config.load_kube_config(config_file=str(resolved))
        except config.ConfigException as e:
            raise ConfigurationError(f"Invalid kubeconfig {resolved}: {e}") from e
        return str(resolved)

    try:
        config.load_kube_config()
        return "default kubeconfig"
    except config.ConfigException:
        pass
    try:
        config.load_incluster_config()
    except config.ConfigException as e:
        raise ConfigurationError(f"No management cluster credentials found: {e}") from e
    return "in-cluster"
