"""Containerd per-host registry trust store.

Layout under the registry config dir (``/etc/containerd/certs.d`` by default)::

    <host>/hosts.toml
    <host>/<host>.pem      # only when the registry carries CA material

One directory per registry host; every scheme of that host is a ``[host]``
table in its ``hosts.toml``.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set

import tomli_w

from ..models import RegistrySpec

logger = logging.getLogger("nodeforge.cri.hosts")

CAPABILITY_PULL = "pull"
CAPABILITY_PUSH = "push"
CAPABILITY_RESOLVE = "resolve"

HOSTS_FILENAME = "hosts.toml"


@dataclass
class ContainerdHost:
    scheme: str
    host: str
    capabilities: List[str] = field(default_factory=list)
    skip_verify: bool = False
    ca: bytes = b''

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scheme': self.scheme,
            'host': self.host,
            'capabilities': list(self.capabilities),
            'skip_verify': self.skip_verify,
            'ca': self.ca.decode('utf-8'),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContainerdHost':
        return cls(
            scheme=data['scheme'],
            host=data['host'],
            capabilities=list(data.get('capabilities') or []),
            skip_verify=bool(data.get('skip_verify', False)),
            ca=(data.get('ca') or '').encode('utf-8'),
        )


@dataclass
class ContainerdRegistry:
    """All endpoints of one registry host. ``server`` has no scheme, e.g. docker.io."""
    server: str
    hosts: List[ContainerdHost] = field(default_factory=list)

    def host_file(self, host_dir: str) -> Dict[str, Any]:
        """The hosts.toml document; CA paths point into ``host_dir``."""
        host_configs: Dict[str, Any] = {}
        for host in self.hosts:
            cfg: Dict[str, Any] = {}
            if host.capabilities:
                cfg['capabilities'] = list(host.capabilities)
            if host.ca:
                cfg['ca'] = os.path.join(host_dir, f"{host.host}.pem")
            if host.skip_verify:
                cfg['skip_verify'] = True
            host_configs[host.url] = cfg
        return {'server': self.server, 'host': host_configs}

    def render(self, config_dir: str) -> str:
        """Write hosts.toml and CA files for this registry; return the host dir."""
        host_dir = os.path.join(config_dir, self.server)
        os.makedirs(host_dir, mode=0o755, exist_ok=True)
        for host in self.hosts:
            if host.ca:
                ca_file = os.path.join(host_dir, f"{host.host}.pem")
                try:
                    with open(ca_file, 'wb') as f:
                        f.write(host.ca)
                except OSError as e:
                    raise OSError(f"write ca file {ca_file} failed: {e}") from e
        with open(os.path.join(host_dir, HOSTS_FILENAME), 'wb') as f:
            tomli_w.dump(self.host_file(host_dir), f)
        logger.debug(f"Rendered registry config for {self.server} into {host_dir}")
        return host_dir

    def to_dict(self) -> Dict[str, Any]:
        return {'server': self.server, 'hosts': [h.to_dict() for h in self.hosts]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContainerdRegistry':
        return cls(server=data['server'], hosts=[ContainerdHost.from_dict(h) for h in data.get('hosts') or []])


def to_containerd_registry_config(registries: Iterable[RegistrySpec]) -> Dict[str, ContainerdRegistry]:
    """Group registries by host, keeping the order endpoints were given in."""
    configs: Dict[str, ContainerdRegistry] = {}
    for r in registries:
        cfg = configs.get(r.host)
        if cfg is None:
            cfg = configs[r.host] = ContainerdRegistry(server=r.host)
        cfg.hosts.append(ContainerdHost(
            scheme=r.scheme,
            host=r.host,
            capabilities=[CAPABILITY_PULL, CAPABILITY_PUSH, CAPABILITY_RESOLVE],
            skip_verify=r.skip_verify,
            ca=r.ca.encode('utf-8') if r.ca else b'',
        ))
    return configs


def filter_registry_with_auth(registries: Iterable[RegistrySpec]) -> List[RegistrySpec]:
    """Registries carrying credentials; these also go into config.toml."""
    return [r for r in registries if r.registry_auth is not None]


def existing_host_dirs(config_dir: str) -> Set[str]:
    """Names of per-host directories under ``config_dir``; none if it is missing."""
    try:
        entries = list(os.scandir(config_dir))
    except FileNotFoundError:
        return set()
    except OSError as e:
        raise OSError(f"read registry config dir {config_dir} failed: {e}") from e
    return {entry.name for entry in entries if entry.is_dir()}


def render_registry_configs(config_dir: str, configs: Dict[str, ContainerdRegistry]) -> None:
    for cfg in configs.values():
        try:
            cfg.render(config_dir)
        except OSError as e:
            raise OSError(f"render registry config {cfg.server} to {config_dir} failed: {e}") from e


def reconcile_registry_configs(config_dir: str, configs: Dict[str, ContainerdRegistry]) -> List[str]:
    """Render ``configs`` and evict host dirs that are no longer wanted.

    Returns the names of the stale dirs that were removed. A stale dir that
    cannot be removed is logged and left behind.
    """
    stale = existing_host_dirs(config_dir)
    render_registry_configs(config_dir, configs)
    stale -= set(configs)

    removed = []
    for name in sorted(stale):
        try:
            shutil.rmtree(os.path.join(config_dir, name))
            removed.append(name)
            logger.info(f"🧹 Removed stale registry config {name}")
        except OSError as e:
            logger.error(f"Failed to clear old registry config dir {name}: {e}")
    return removed


def reconcile_trust_store(config_dir: str, registries: Iterable[RegistrySpec]) -> List[str]:
    """Converge ``config_dir`` on exactly the hosts of ``registries``."""
    return reconcile_registry_configs(config_dir, to_containerd_registry_config(registries))
