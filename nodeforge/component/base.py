"""The Runnable component contract.

Every installable node component (container runtime, CNI plugin) implements
:class:`Runnable`. On the control side a component turns desired state into
``Step`` sequences; on the node the agent decodes the step payload back into
the same component type and calls ``install``/``uninstall``/``render``.
"""

import json
import logging
import platform
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import NodeforgeConfig, get_config
from ..downloader import Downloader
from ..errors import ComponentError, OperationCancelled
from ..models import Command, Step, StepAction, StepNode
from ..utils.system import SystemdServiceManager, run_cmd

logger = logging.getLogger("nodeforge.component")

ARCH_MAP = {
    "x86_64": "amd64", "amd64": "amd64",
    "aarch64": "arm64", "arm64": "arm64",
}


def node_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_MAP.get(machine, machine)


@dataclass
class ExtraMetadata:
    """Cluster-wide facts a component needs while generating its steps."""
    cluster_name: str = ''
    kube_version: str = ''
    cri: str = 'containerd'
    offline: bool = False
    local_registry: str = ''
    kubelet_data_dir: str = '/var/lib/kubelet'
    repo_mirror: str = ''


@dataclass
class Options:
    """Everything an on-node action needs besides the component state."""
    dry_run: bool = False
    config: NodeforgeConfig = field(default_factory=get_config)
    downloader: Optional[Downloader] = None
    services: Any = None
    runner: Callable[..., str] = run_cmd
    container_client_factory: Optional[Callable[[str], Any]] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    arch: str = field(default_factory=node_arch)

    def __post_init__(self):
        if self.downloader is None:
            self.downloader = Downloader.from_config(self.config)
        if self.services is None:
            self.services = SystemdServiceManager(runner=self.runner)

    def run(self, *args: str, timeout: Optional[float] = None) -> str:
        return self.runner(list(args), dry_run=self.dry_run, timeout=timeout)

    def check_cancelled(self) -> None:
        """Raise OperationCancelled if the action was cancelled."""
        if self.cancel_event.is_set():
            raise OperationCancelled("operation cancelled")


class Runnable(ABC):
    """Base class of every installable node component.

    Subclasses are dataclasses; their public fields form the payload shipped
    inside custom commands.
    """

    @abstractmethod
    def type(self) -> str:
        """Stable component kind."""

    def new_instance(self) -> 'Runnable':
        """Zero-value instance used to decode a stored payload."""
        return type(self)()

    @abstractmethod
    def init_step(self, metadata: ExtraMetadata, desired: Any, nodes: List[StepNode], **kwargs) -> 'Runnable':
        """Return a new component bound to the desired state, with its steps generated."""

    @abstractmethod
    def install_steps(self, nodes: List[StepNode], reference_version: str = '') -> List[Step]:
        ...

    @abstractmethod
    def uninstall_steps(self, nodes: List[StepNode]) -> List[Step]:
        ...

    @abstractmethod
    def install(self, options: Options) -> Optional[bytes]:
        ...

    @abstractmethod
    def uninstall(self, options: Options) -> Optional[bytes]:
        ...

    def upgrade(self, options: Options) -> Optional[bytes]:
        raise ComponentError(f"{self.type()} does not support upgrade")

    def render(self, options: Options) -> None:
        raise ComponentError(f"{self.type()} has no template to render")

    def get_action_steps(self, action: StepAction) -> List[Step]:
        """Steps computed by init_step for ``action``; empty if none."""
        return list(getattr(self, '_steps', {}).get(StepAction(action), []))

    def set_action_steps(self, action: StepAction, steps: List[Step]) -> None:
        if not hasattr(self, '_steps'):
            self._steps = {}
        self._steps[StepAction(action)] = list(steps)

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        ...

    @classmethod
    @abstractmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Runnable':
        ...

    def to_payload(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode('utf-8')

    @classmethod
    def from_payload(cls, payload: bytes) -> 'Runnable':
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ComponentError(f"invalid {cls.__name__} payload: {e}") from e
        if not isinstance(data, dict):
            raise ComponentError(f"invalid {cls.__name__} payload: expected an object")
        return cls.from_dict(data)

    def command(self, identity: str) -> Command:
        """A custom command carrying a snapshot of this component."""
        return Command.custom(identity, self.to_payload())
