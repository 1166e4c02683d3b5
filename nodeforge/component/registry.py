"""Explicit registry of component handlers.

Every component is registered under ``<kind>-<version>-<role>``. The same key
is written into ``Command.identity`` so the agent can find the handler that
decodes a custom command.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List

from ..errors import ComponentError
from .base import Runnable

logger = logging.getLogger("nodeforge.component.registry")

KEY_FORMAT = "{kind}-{version}-{role}"


class ComponentRole(str, Enum):
    """Template handlers render files; agent step handlers install/uninstall."""
    TEMPLATE = 'template'
    AGENT_STEP = 'step'


def component_key(kind: str, version: str, role: ComponentRole) -> str:
    return KEY_FORMAT.format(kind=kind, version=version, role=ComponentRole(role).value)


@dataclass(frozen=True)
class Registration:
    kind: str
    version: str
    role: ComponentRole
    factory: Callable[[], Runnable]

    @property
    def key(self) -> str:
        return component_key(self.kind, self.version, self.role)


class ComponentRegistry:
    """Maps component keys to factories of zero-value components."""

    def __init__(self):
        self._registrations: Dict[str, Registration] = {}

    def register(self, kind: str, version: str, role: ComponentRole, factory: Callable[[], Runnable]) -> str:
        registration = Registration(kind, version, ComponentRole(role), factory)
        if registration.key in self._registrations:
            raise ComponentError(f"component {registration.key} is already registered")
        self._registrations[registration.key] = registration
        logger.debug(f"Registered component {registration.key}")
        return registration.key

    def resolve(self, identity: str) -> Registration:
        try:
            return self._registrations[identity]
        except KeyError:
            raise ComponentError(f"no component registered for {identity}") from None

    def lookup(self, identity: str) -> Runnable:
        """Return a fresh zero-value component for ``identity``."""
        return self.resolve(identity).factory()

    def keys(self) -> List[str]:
        return sorted(self._registrations)

    def __contains__(self, identity: str) -> bool:
        return identity in self._registrations


def default_registry() -> ComponentRegistry:
    """Registry populated with every component nodeforge ships."""
    from ..cni.calico import CalicoRunnable, CALICO_KIND, CNI_VERSION
    from ..cri.containerd import (
        ContainerdRegistryConfigure, ContainerdRunnable,
        CRI_CONTAINERD, CRI_REGISTRY_KIND, CRI_VERSION,
    )
    from .chart import Chart, CHART_KIND, CHART_VERSION

    registry = ComponentRegistry()
    registry.register(CRI_CONTAINERD, CRI_VERSION, ComponentRole.AGENT_STEP, ContainerdRunnable)
    registry.register(CRI_REGISTRY_KIND, CRI_VERSION, ComponentRole.AGENT_STEP, ContainerdRegistryConfigure)
    registry.register(CALICO_KIND, CNI_VERSION, ComponentRole.TEMPLATE, CalicoRunnable)
    registry.register(CALICO_KIND, CNI_VERSION, ComponentRole.AGENT_STEP, CalicoRunnable)
    registry.register(CHART_KIND, CHART_VERSION, ComponentRole.AGENT_STEP, Chart)
    return registry
