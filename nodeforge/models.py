"""Data models for desired cluster state and node execution steps."""

import base64
import uuid
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class StepAction(str, Enum):
    """What a step does to the component on its nodes."""
    INSTALL = 'install'
    UNINSTALL = 'uninstall'
    UPGRADE = 'upgrade'


class CommandType(str, Enum):
    """How the receiving agent interprets a command."""
    SHELL = 'shell'
    CUSTOM = 'custom'


class IPFamily(str, Enum):
    """Cluster IP family."""
    IPV4 = 'IPv4'
    DUAL_STACK = 'IPv4+IPv6'


def new_step_id() -> str:
    """Return a fresh, never reused step identifier."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class RegistryAuth:
    """Credentials used by the runtime to log in to a registry."""
    username: str = ''
    password: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {'username': self.username, 'password': self.password}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['RegistryAuth']:
        if not data:
            return None
        return cls(username=data.get('username', ''), password=data.get('password', ''))


@dataclass(frozen=True)
class RegistrySpec:
    """A container registry endpoint.

    Two specs are the same registry when their identity key (scheme + host)
    matches; equality compares every field. The name a cluster refers to a
    registry by lives on CRIRegistry.registry_ref, not here.
    """
    scheme: str
    host: str
    skip_verify: bool = False
    ca: str = ''
    registry_auth: Optional[RegistryAuth] = None

    @property
    def key(self) -> str:
        """Identity key used to order and deduplicate registries."""
        return self.scheme + self.host

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'scheme': self.scheme,
            'host': self.host,
            'skip_verify': self.skip_verify,
            'ca': self.ca,
        }
        if self.registry_auth is not None:
            data['registry_auth'] = self.registry_auth.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistrySpec':
        return cls(
            scheme=data.get('scheme', 'https'),
            host=data['host'],
            skip_verify=bool(data.get('skip_verify', False)),
            ca=data.get('ca') or '',
            registry_auth=RegistryAuth.from_dict(data.get('registry_auth')),
        )


@dataclass(frozen=True)
class StepNode:
    """A node a step is dispatched to."""
    id: str
    ipv4: str = ''
    node_ipv4: str = ''
    hostname: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {'id': self.id, 'ipv4': self.ipv4, 'node_ipv4': self.node_ipv4, 'hostname': self.hostname}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepNode':
        return cls(
            id=data['id'],
            ipv4=data.get('ipv4', ''),
            node_ipv4=data.get('node_ipv4', ''),
            hostname=data.get('hostname', ''),
        )


@dataclass(frozen=True)
class Command:
    """A single command of a step.

    Shell commands carry an argument list; custom commands carry an opaque
    payload and the identity of the component handler that decodes it.
    """
    type: CommandType
    shell_command: Tuple[str, ...] = ()
    custom_command: bytes = b''
    identity: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'type', CommandType(self.type))
        object.__setattr__(self, 'shell_command', tuple(self.shell_command))
        if self.type == CommandType.SHELL:
            if self.custom_command:
                raise ValueError("shell command cannot carry a custom payload")
            if not self.shell_command:
                raise ValueError("shell command requires at least one argument")
        else:
            if self.shell_command:
                raise ValueError("custom command cannot carry shell arguments")
            if not self.identity:
                raise ValueError("custom command requires a handler identity")

    @classmethod
    def shell(cls, *args: str) -> 'Command':
        return cls(type=CommandType.SHELL, shell_command=tuple(args))

    @classmethod
    def custom(cls, identity: str, payload: bytes) -> 'Command':
        return cls(type=CommandType.CUSTOM, custom_command=payload, identity=identity)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value}
        if self.type == CommandType.SHELL:
            data['shell_command'] = list(self.shell_command)
        else:
            data['identity'] = self.identity
            data['custom_command'] = base64.b64encode(self.custom_command).decode('ascii')
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Command':
        if CommandType(data['type']) == CommandType.SHELL:
            return cls.shell(*data.get('shell_command', []))
        return cls.custom(data['identity'], base64.b64decode(data.get('custom_command', '')))


@dataclass(frozen=True)
class Step:
    """An immutable, node-targeted unit of work.

    ``timeout`` and ``retry_times`` are consumed by the executor that runs the
    step; nothing here retries.
    """
    name: str
    action: StepAction
    nodes: Tuple[StepNode, ...] = ()
    commands: Tuple[Command, ...] = ()
    timeout: timedelta = timedelta(minutes=1)
    err_ignore: bool = False
    retry_times: int = 0
    id: str = field(default_factory=new_step_id)

    def __post_init__(self):
        object.__setattr__(self, 'action', StepAction(self.action))
        object.__setattr__(self, 'nodes', tuple(self.nodes))
        object.__setattr__(self, 'commands', tuple(self.commands))
        if self.retry_times < 0:
            raise ValueError(f"retry_times must be >= 0, got {self.retry_times}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'timeout': self.timeout.total_seconds(),
            'err_ignore': self.err_ignore,
            'retry_times': self.retry_times,
            'action': self.action.value,
            'nodes': [n.to_dict() for n in self.nodes],
            'commands': [c.to_dict() for c in self.commands],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        return cls(
            id=data.get('id') or new_step_id(),
            name=data['name'],
            timeout=timedelta(seconds=data.get('timeout', 60)),
            err_ignore=bool(data.get('err_ignore', False)),
            retry_times=int(data.get('retry_times', 0)),
            action=StepAction(data['action']),
            nodes=tuple(StepNode.from_dict(n) for n in data.get('nodes', [])),
            commands=tuple(Command.from_dict(c) for c in data.get('commands', [])),
        )


@dataclass
class Node:
    """A cluster member as reported by the cluster store."""
    name: str
    ipv4: str = ''
    node_ipv4: str = ''
    hostname: str = ''
    labels: Dict[str, str] = field(default_factory=dict)

    def to_step_node(self) -> StepNode:
        return StepNode(
            id=self.name,
            ipv4=self.ipv4,
            node_ipv4=self.node_ipv4 or self.ipv4,
            hostname=self.hostname or self.name,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Node':
        return cls(
            name=data['name'],
            ipv4=data.get('ipv4', ''),
            node_ipv4=data.get('node_ipv4', ''),
            hostname=data.get('hostname', ''),
            labels=dict(data.get('labels') or {}),
        )


@dataclass(frozen=True)
class CRIRegistry:
    """An explicit registry entry of a cluster: a literal host or a named reference."""
    insecure_registry: str = ''
    registry_ref: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CRIRegistry':
        return cls(insecure_registry=data.get('insecure_registry', ''), registry_ref=data.get('registry_ref'))


@dataclass
class ContainerRuntime:
    type: str = 'containerd'
    version: str = ''
    data_root_dir: str = ''
    insecure_registry: List[str] = field(default_factory=list)
    registries: List[CRIRegistry] = field(default_factory=list)


@dataclass
class Addon:
    """An addon attached to a cluster. ``config`` is opaque to the core."""
    name: str
    version: str = ''
    config: Any = None


@dataclass
class Calico:
    ipv4_auto_detection: str = 'first-found'
    ipv6_auto_detection: str = 'first-found'
    mode: str = 'Overlay-Vxlan-All'
    ip_manger: bool = True
    mtu: int = 1440


@dataclass
class CNI:
    type: str = 'calico'
    version: str = ''
    namespace: str = 'calico-system'
    local_registry: str = ''
    offline: bool = False
    calico: Calico = field(default_factory=Calico)


@dataclass
class Networking:
    ip_family: IPFamily = IPFamily.IPV4
    pod_cidr_blocks: List[str] = field(default_factory=lambda: ['172.25.0.0/16'])
    service_cidr_blocks: List[str] = field(default_factory=lambda: ['10.96.0.0/16'])
    dns_domain: str = 'cluster.local'


@dataclass
class ClusterStatus:
    registries: List[RegistrySpec] = field(default_factory=list)


@dataclass
class Cluster:
    """Desired state of a cluster as far as node provisioning is concerned."""
    name: str
    kubernetes_version: str = ''
    kubelet_data_dir: str = '/var/lib/kubelet'
    container_runtime: ContainerRuntime = field(default_factory=ContainerRuntime)
    networking: Networking = field(default_factory=Networking)
    cni: CNI = field(default_factory=CNI)
    addons: List[Addon] = field(default_factory=list)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    def with_registries(self, registries: List[CRIRegistry]) -> 'Cluster':
        """Return a copy whose explicit registry list is replaced."""
        runtime = replace(self.container_runtime, registries=list(registries))
        return replace(self, container_runtime=runtime)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Cluster':
        cr = data.get('container_runtime') or {}
        net = data.get('networking') or {}
        cni = data.get('cni') or {}
        calico = cni.get('calico') or {}
        status = data.get('status') or {}
        return cls(
            name=data['name'],
            kubernetes_version=data.get('kubernetes_version', ''),
            kubelet_data_dir=data.get('kubelet_data_dir', '/var/lib/kubelet'),
            container_runtime=ContainerRuntime(
                type=cr.get('type', 'containerd'),
                version=cr.get('version', ''),
                data_root_dir=cr.get('data_root_dir', ''),
                insecure_registry=list(cr.get('insecure_registry') or []),
                registries=[CRIRegistry.from_dict(r) for r in cr.get('registries') or []],
            ),
            networking=Networking(
                ip_family=IPFamily(net.get('ip_family', IPFamily.IPV4.value)),
                pod_cidr_blocks=list(net.get('pod_cidr_blocks') or ['172.25.0.0/16']),
                service_cidr_blocks=list(net.get('service_cidr_blocks') or ['10.96.0.0/16']),
                dns_domain=net.get('dns_domain', 'cluster.local'),
            ),
            cni=CNI(
                type=cni.get('type', 'calico'),
                version=cni.get('version', ''),
                namespace=cni.get('namespace', 'calico-system'),
                local_registry=cni.get('local_registry', ''),
                offline=bool(cni.get('offline', False)),
                calico=Calico(**calico),
            ),
            addons=[Addon(name=a['name'], version=a.get('version', ''), config=a.get('config'))
                    for a in data.get('addons') or []],
            status=ClusterStatus(
                registries=[RegistrySpec.from_dict(r) for r in status.get('registries') or []],
            ),
        )
