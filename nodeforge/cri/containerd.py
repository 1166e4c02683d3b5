"""Containerd container runtime component."""

import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..component.base import ExtraMetadata, Options, Runnable
from ..component.registry import ComponentRole, component_key
from ..errors import ComponentError
from ..models import Cluster, RegistrySpec, Step, StepAction, StepNode
from ..utils import log_payload
from ..utils.fileutil import write_file_atomic
from ..utils.system import is_running_systemd, remove_paths
from ..utils.template import get_template_path, render_template
from .hosts import (
    ContainerdRegistry,
    filter_registry_with_auth,
    reconcile_registry_configs,
    render_registry_configs,
    to_containerd_registry_config,
)
from .teardown import K8S_NAMESPACE, teardown

logger = logging.getLogger("nodeforge.cri.containerd")

CRI_CONTAINERD = 'containerd'
CRI_REGISTRY_KIND = 'containerd-registry'
CRI_VERSION = 'v1'

CONTAINERD_UNIT = 'containerd.service'
CONFIG_FILENAME = 'config.toml'
DEFAULT_PAUSE_VERSION = '3.9'

# kubernetes minor -> pause image tag
K8S_PAUSE_VERSIONS = {
    '118': '3.2',
    '119': '3.2',
    '120': '3.2',
    '121': '3.4.1',
    '122': '3.5',
    '123': '3.6',
    '124': '3.7',
    '125': '3.8',
    '126': '3.9',
    '127': '3.9',
    '128': '3.9',
    '129': '3.9',
    '130': '3.10',
}

_KUBE_VERSION_RE = re.compile(r'^v?(\d+)\.(\d+)')

TEMPLATE_DIR = get_template_path(__file__)


def match_pause_version(kube_version: str) -> Tuple[str, str]:
    """Return (pause tag, pause registry) for a kubernetes version.

    Unknown versions give an empty tag. From 1.25 on images come from
    registry.k8s.io.
    """
    registry = 'k8s.gcr.io'
    m = _KUBE_VERSION_RE.match(kube_version or '')
    if not m:
        return '', registry
    minor_key = f"{m.group(1)}{m.group(2)}"
    if (int(m.group(1)), int(m.group(2))) >= (1, 25):
        registry = 'registry.k8s.io'
    return K8S_PAUSE_VERSIONS.get(minor_key, ''), registry


@dataclass
class ContainerdRunnable(Runnable):
    version: str = ''
    offline: bool = False
    data_root_dir: str = ''
    local_registry: str = ''
    kube_version: str = ''
    pause_version: str = ''
    pause_registry: str = ''
    enable_systemd_cgroup: bool = True
    registry_config_dir: str = ''
    registries: List[RegistrySpec] = field(default_factory=list)
    registry_with_auth: List[RegistrySpec] = field(default_factory=list)

    def type(self) -> str:
        return CRI_CONTAINERD

    def resolved(self, kube_version: str = '', fallback_kube_version: str = '') -> 'ContainerdRunnable':
        """Copy with the pause image and credentialed registries filled in."""
        pause_version, pause_registry = match_pause_version(kube_version)
        if not pause_version:
            pause_version, pause_registry = match_pause_version(fallback_kube_version)
        return replace(
            self,
            kube_version=kube_version or fallback_kube_version,
            pause_version=pause_version,
            pause_registry=pause_registry,
            registry_with_auth=filter_registry_with_auth(self.registries),
        )

    def init_step(self, metadata: ExtraMetadata, desired: Cluster, nodes: List[StepNode],
                  registries: Optional[List[RegistrySpec]] = None, **kwargs) -> 'ContainerdRunnable':
        runtime = ContainerdRunnable(
            version=desired.container_runtime.version,
            offline=metadata.offline,
            data_root_dir=desired.container_runtime.data_root_dir,
            local_registry=metadata.local_registry,
            registry_config_dir=self.registry_config_dir,
            registries=list(registries or []),
        ).resolved(metadata.kube_version, desired.kubernetes_version)
        logger.info(f"[InitStep] Containerd registries: {[r.key for r in runtime.registries]}")
        logger.info(f"[InitStep] Containerd registries with auth: {[r.key for r in runtime.registry_with_auth]}")

        runtime.set_action_steps(StepAction.INSTALL, runtime.install_steps(nodes))
        runtime.set_action_steps(StepAction.UNINSTALL, runtime.uninstall_steps(nodes))
        return runtime

    def _runtime_step(self, name: str, action: StepAction, nodes: List[StepNode]) -> Step:
        if not self.version:
            raise ComponentError("containerd version is required")
        return Step(
            name=name,
            action=action,
            timeout=timedelta(minutes=10),
            err_ignore=False,
            retry_times=1,
            nodes=tuple(nodes),
            commands=(self.command(component_key(CRI_CONTAINERD, CRI_VERSION, ComponentRole.AGENT_STEP)),),
        )

    def install_steps(self, nodes: List[StepNode], reference_version: str = '') -> List[Step]:
        return [self._runtime_step('installRuntime', StepAction.INSTALL, nodes)]

    def uninstall_steps(self, nodes: List[StepNode]) -> List[Step]:
        return [self._runtime_step('uninstallRuntime', StepAction.UNINSTALL, nodes)]

    def install(self, options: Options) -> Optional[bytes]:
        options.check_cancelled()
        instance = options.downloader.new_instance(
            CRI_CONTAINERD, self.version, options.arch, not self.offline, options.dry_run
        )
        instance.download_and_unpack_configs()

        # systemd is the cgroup manager whenever it is the init system
        runtime = replace(self, enable_systemd_cgroup=is_running_systemd())

        options.check_cancelled()
        runtime.setup_containerd_config(options)
        runtime.enable_containerd_service(options)
        options.run("crictl", "config", "runtime-endpoint", f"unix://{options.config.paths.containerd_socket}")
        logger.info(f"✅ Installed containerd {self.version} (online: {not self.offline})")
        return None

    def uninstall(self, options: Options) -> Optional[bytes]:
        options.check_cancelled()
        paths = options.config.paths
        if options.dry_run:
            logger.debug(f"[dry-run] would tear down namespace {K8S_NAMESPACE}")
        elif os.path.exists(paths.containerd_socket):
            teardown(paths.containerd_socket, K8S_NAMESPACE, options.container_client_factory)
        else:
            logger.info(f"containerd socket {paths.containerd_socket} not present, skipping container teardown")

        self.disable_containerd_service(options)

        instance = options.downloader.new_instance(
            CRI_CONTAINERD, self.version, options.arch, not self.offline, options.dry_run
        )
        try:
            instance.remove_configs()
        except Exception as e:
            logger.error(f"Failed to remove containerd configs: {e}")

        if not options.dry_run:
            remove_paths([
                paths.containerd_run_dir,
                self.data_root_dir or paths.containerd_data_dir,
                paths.containerd_config_dir,
                paths.containerd_data_dir,
            ])
            try:
                options.services.reload_daemon()
            except Exception as e:
                logger.warning(f"Failed to reload systemd daemon: {e}")
        logger.info("✅ Uninstalled containerd")
        return None

    def render_config(self, options: Options) -> str:
        """Render config.toml for this runtime."""
        paths = options.config.paths
        local_registry = self.local_registry
        # online without a local registry: pull through the default mirror
        if not self.offline and not local_registry:
            local_registry = options.config.registry.repo_mirror
            if local_registry:
                logger.info(f"Rendering containerd config with default repo mirror {local_registry}")
        if local_registry:
            sandbox_image = f"{local_registry}/pause:{self.pause_version or DEFAULT_PAUSE_VERSION}"
        else:
            sandbox_image = f"{self.pause_registry or 'registry.k8s.io'}/pause:{self.pause_version or DEFAULT_PAUSE_VERSION}"
        return render_template(
            TEMPLATE_DIR,
            'config.toml.j2',
            data_root_dir=self.data_root_dir or paths.containerd_data_dir,
            run_dir=paths.containerd_run_dir,
            socket=paths.containerd_socket,
            sandbox_image=sandbox_image,
            enable_systemd_cgroup=self.enable_systemd_cgroup,
            registry_config_dir=self.registry_config_dir or paths.registry_config_dir,
            registry_with_auth=self.registry_with_auth,
        )

    def write_daemon_config(self, options: Options) -> str:
        path = os.path.join(options.config.paths.containerd_config_dir, CONFIG_FILENAME)
        write_file_atomic(path, self.render_config(options), mode=0o644, dry_run=options.dry_run)
        return path

    def setup_containerd_config(self, options: Options) -> None:
        self.write_daemon_config(options)
        if options.dry_run:
            return
        render_registry_configs(
            self.registry_config_dir or options.config.paths.registry_config_dir,
            to_containerd_registry_config(self.registries),
        )

    def enable_containerd_service(self, options: Options) -> None:
        if options.dry_run:
            logger.debug(f"[dry-run] enable and restart systemd unit {CONTAINERD_UNIT}")
            return
        options.services.reload_daemon()
        options.services.enable(CONTAINERD_UNIT)
        options.services.restart(CONTAINERD_UNIT)
        logger.debug(f"Enabled and restarted systemd unit {CONTAINERD_UNIT}")

    def disable_containerd_service(self, options: Options) -> None:
        if options.dry_run:
            logger.debug(f"[dry-run] stop and disable systemd unit {CONTAINERD_UNIT}")
            return
        for op in (options.services.stop, options.services.disable):
            try:
                op(CONTAINERD_UNIT)
            except Exception as e:
                logger.warning(f"Failed to {op.__name__} systemd unit {CONTAINERD_UNIT}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'offline': self.offline,
            'data_root_dir': self.data_root_dir,
            'local_registry': self.local_registry,
            'kube_version': self.kube_version,
            'pause_version': self.pause_version,
            'pause_registry': self.pause_registry,
            'enable_systemd_cgroup': self.enable_systemd_cgroup,
            'registry_config_dir': self.registry_config_dir,
            'registries': [r.to_dict() for r in self.registries],
            'registry_with_auth': [r.to_dict() for r in self.registry_with_auth],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContainerdRunnable':
        return cls(
            version=data.get('version', ''),
            offline=bool(data.get('offline', False)),
            data_root_dir=data.get('data_root_dir', ''),
            local_registry=data.get('local_registry', ''),
            kube_version=data.get('kube_version', ''),
            pause_version=data.get('pause_version', ''),
            pause_registry=data.get('pause_registry', ''),
            enable_systemd_cgroup=bool(data.get('enable_systemd_cgroup', True)),
            registry_config_dir=data.get('registry_config_dir', ''),
            registries=[RegistrySpec.from_dict(r) for r in data.get('registries') or []],
            registry_with_auth=[RegistrySpec.from_dict(r) for r in data.get('registry_with_auth') or []],
        )


@dataclass
class ContainerdRegistryConfigure(Runnable):
    """Payload of the registry update step: converges the trust store on a node."""
    registries: Dict[str, ContainerdRegistry] = field(default_factory=dict)
    config_dir: str = ''
    containerd_runnable: Optional[ContainerdRunnable] = None

    def type(self) -> str:
        return CRI_REGISTRY_KIND

    @classmethod
    def for_registries(cls, registries: List[RegistrySpec], runtime: Optional[ContainerdRunnable] = None,
                       config_dir: str = '') -> 'ContainerdRegistryConfigure':
        return cls(
            registries=to_containerd_registry_config(registries),
            config_dir=config_dir or (runtime.registry_config_dir if runtime else ''),
            containerd_runnable=runtime,
        )

    def init_step(self, metadata: ExtraMetadata, desired: Cluster, nodes: List[StepNode],
                  registries: Optional[List[RegistrySpec]] = None, **kwargs) -> 'ContainerdRegistryConfigure':
        registries = list(registries or [])
        runtime = ContainerdRunnable(
            version=desired.container_runtime.version,
            offline=metadata.offline,
            data_root_dir=desired.container_runtime.data_root_dir,
            local_registry=metadata.local_registry,
            registries=registries,
        ).resolved(metadata.kube_version, desired.kubernetes_version)
        configure = ContainerdRegistryConfigure.for_registries(registries, runtime=runtime, config_dir=self.config_dir)
        configure.set_action_steps(StepAction.INSTALL, configure.install_steps(nodes))
        return configure

    def install_steps(self, nodes: List[StepNode], reference_version: str = '') -> List[Step]:
        return [Step(
            name='updateCRIRegistry',
            action=StepAction.INSTALL,
            timeout=timedelta(minutes=1),
            err_ignore=False,
            retry_times=1,
            nodes=tuple(nodes),
            commands=(self.command(component_key(CRI_REGISTRY_KIND, CRI_VERSION, ComponentRole.AGENT_STEP)),),
        )]

    def uninstall_steps(self, nodes: List[StepNode]) -> List[Step]:
        return []

    def install(self, options: Options) -> Optional[bytes]:
        if options.dry_run:
            return None
        log_payload(logger, "Updating registry config", self.to_dict())
        config_dir = self.config_dir or options.config.paths.registry_config_dir
        reconcile_registry_configs(config_dir, self.registries)

        options.check_cancelled()
        # cgroup driver follows the node, not the control side that built the payload
        runtime = replace(self.containerd_runnable or ContainerdRunnable(),
                          enable_systemd_cgroup=is_running_systemd())
        runtime.write_daemon_config(options)
        options.services.reload_daemon()
        options.services.restart(CONTAINERD_UNIT)
        logger.info(f"✅ Registry config updated for {len(self.registries)} host(s)")
        return None

    def uninstall(self, options: Options) -> Optional[bytes]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'registries': {server: r.to_dict() for server, r in self.registries.items()},
            'config_dir': self.config_dir,
            'containerd_runnable': self.containerd_runnable.to_dict() if self.containerd_runnable else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContainerdRegistryConfigure':
        runtime = data.get('containerd_runnable')
        return cls(
            registries={server: ContainerdRegistry.from_dict(r) for server, r in (data.get('registries') or {}).items()},
            config_dir=data.get('config_dir', ''),
            containerd_runnable=ContainerdRunnable.from_dict(runtime) if runtime else None,
        )
