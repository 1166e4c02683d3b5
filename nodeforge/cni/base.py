"""Pieces shared by every CNI plugin component."""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Tuple

from ..component.base import Runnable
from ..component.registry import ComponentRole, component_key
from ..errors import ComponentError
from ..models import Command, Step, StepAction, StepNode

logger = logging.getLogger("nodeforge.cni")

CNI_VERSION = 'v1'
HIGH_KUBE_VERSION = (1, 28, 0)

_VERSION_RE = re.compile(r'^v?(\d+)\.(\d+)(?:\.(\d+))?')


def parse_version(version: str) -> Tuple[int, int, int]:
    m = _VERSION_RE.match(version or '')
    if not m:
        raise ComponentError(f"invalid version {version!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


def is_high_kube_version(kube_version: str) -> bool:
    """True from kubernetes v1.28.0 on, where CNIs are installed from charts."""
    return parse_version(kube_version) >= HIGH_KUBE_VERSION


@dataclass
class NodeAddressDetection:
    type: str = ''
    value: str = ''

    @property
    def method(self) -> str:
        """Form used by the IP_AUTODETECTION_METHOD variable of calico-node."""
        if not self.type or self.type == 'first-found':
            return 'first-found'
        return f"{self.type}={self.value}"


ADDRESS_DETECTION_TYPES = ('first-found', 'interface', 'skip-interface', 'can-reach', 'cidr', 'kubernetes-internal-ip')


def parse_node_address_detection(method: str) -> NodeAddressDetection:
    """Split an auto-detection method such as ``interface=eth.*``."""
    if not method:
        return NodeAddressDetection()
    kind, sep, value = method.partition('=')
    kind = kind.strip()
    if kind not in ADDRESS_DETECTION_TYPES:
        raise ComponentError(f"unsupported node address detection method {method!r}")
    if kind in ('first-found', 'kubernetes-internal-ip'):
        return NodeAddressDetection(type=kind, value='true')
    if not sep or not value.strip():
        raise ComponentError(f"node address detection {kind} requires a value")
    return NodeAddressDetection(type=kind, value=value.strip())


def _step_role_key(kind: str) -> str:
    return component_key(kind, CNI_VERSION, ComponentRole.AGENT_STEP)


def _template_role_key(kind: str) -> str:
    return component_key(kind, CNI_VERSION, ComponentRole.TEMPLATE)


def load_image_step(runnable: Runnable, kind: str, nodes: List[StepNode]) -> Step:
    return Step(
        name=f"imageLoad-{kind}",
        action=StepAction.INSTALL,
        timeout=timedelta(minutes=10),
        retry_times=1,
        nodes=tuple(nodes),
        commands=(runnable.command(_step_role_key(kind)),),
    )


def remove_image_step(runnable: Runnable, kind: str, nodes: List[StepNode]) -> Step:
    return Step(
        name=f"removeImage-{kind}",
        action=StepAction.UNINSTALL,
        timeout=timedelta(minutes=10),
        err_ignore=True,
        retry_times=1,
        nodes=tuple(nodes),
        commands=(runnable.command(_step_role_key(kind)),),
    )


def render_yaml_step(runnable: Runnable, kind: str, nodes: List[StepNode]) -> Step:
    return Step(
        name=f"renderCniYaml-{kind}",
        action=StepAction.INSTALL,
        timeout=timedelta(seconds=10),
        retry_times=1,
        nodes=tuple(nodes),
        commands=(runnable.command(_template_role_key(kind)),),
    )


def apply_yaml_step(manifest: str, nodes: List[StepNode]) -> Step:
    return Step(
        name="applyCniYaml",
        action=StepAction.INSTALL,
        timeout=timedelta(minutes=1),
        retry_times=1,
        nodes=tuple(nodes),
        commands=(Command.shell("kubectl", "apply", "-f", manifest),),
    )


def install_release_step(release: str, namespace: str, chart: str, values: str, nodes: List[StepNode]) -> Step:
    return Step(
        name=f"installRelease-{release}",
        action=StepAction.INSTALL,
        timeout=timedelta(minutes=5),
        retry_times=1,
        nodes=tuple(nodes),
        commands=(Command.shell(
            "helm", "upgrade", "--install", release, chart,
            "--namespace", namespace, "--create-namespace",
            "--values", values, "--wait",
        ),),
    )


def apply_patch_step(patch: str, nodes: List[StepNode]) -> Step:
    return Step(
        name="applyCniPatch",
        action=StepAction.INSTALL,
        timeout=timedelta(minutes=1),
        retry_times=1,
        nodes=tuple(nodes),
        commands=(Command.shell("kubectl", "apply", "-f", patch),),
    )
