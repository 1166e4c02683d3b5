"""Calico CNI component.

Below kubernetes v1.28 calico is installed from a rendered manifest. From
v1.28 on the tigera-operator chart is installed with rendered values and a
small patch applied afterwards.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..component.base import ExtraMetadata, Options, Runnable
from ..component.chart import Chart
from ..config import get_config
from ..downloader import chart_path
from ..errors import ComponentError, UnsupportedVersionError
from ..models import Cluster, IPFamily, Step, StepAction, StepNode
from ..utils.fileutil import write_file_atomic
from ..utils.template import get_template_path, render_template
from .base import (
    CNI_VERSION,
    NodeAddressDetection,
    apply_patch_step,
    apply_yaml_step,
    install_release_step,
    is_high_kube_version,
    load_image_step,
    parse_node_address_detection,
    remove_image_step,
    render_yaml_step,
)

logger = logging.getLogger("nodeforge.cni.calico")

CALICO = 'calico'
CALICO_KIND = 'cni-calico'

MANIFEST_FILENAME = 'calico.yaml'
PATCH_FILENAME = 'calico-patch.yaml'
RELEASE_NAME = 'calico'
OPERATOR_NAMESPACE = 'tigera-operator'

NETWORK_IPIP_ALL = 'Overlay-IPIP-All'
NETWORK_IPIP_SUBNET = 'Overlay-IPIP-Cross-Subnet'
NETWORK_VXLAN_ALL = 'Overlay-Vxlan-All'
NETWORK_VXLAN_SUBNET = 'Overlay-Vxlan-Cross-Subnet'
NETWORK_BGP = 'BGP'

# mode -> (ipip mode, vxlan mode, operator pool encapsulation)
NETWORK_MODES = {
    NETWORK_IPIP_ALL: ('Always', 'Never', 'IPIP'),
    NETWORK_IPIP_SUBNET: ('CrossSubnet', 'Never', 'IPIPCrossSubnet'),
    NETWORK_VXLAN_ALL: ('Never', 'Always', 'VXLAN'),
    NETWORK_VXLAN_SUBNET: ('Never', 'CrossSubnet', 'VXLANCrossSubnet'),
    NETWORK_BGP: ('Never', 'Never', 'None'),
}

# calico version -> manifest template
VERSION_TEMPLATES = {
    'v3.11.2': 'calico/v3.11.2.yaml.j2',
    'v3.16.10': 'calico/v3.16.10.yaml.j2',
    'v3.21.2': 'calico/v3.21.2.yaml.j2',
    'v3.22.4': 'calico/v3.22.4.yaml.j2',
    'v3.24.5': 'calico/v3.24.5.yaml.j2',
    'v3.26.1': 'calico/v3.26.1.yaml.j2',
}

VALUES_TEMPLATE = 'calico/values.yaml.j2'
PATCH_TEMPLATE = 'calico/patch.yaml.j2'

IPIP_NICS = ('tunl0',)
VXLAN_NICS = ('vxlan.calico', 'vxlan-v6.calico')

TEMPLATE_DIR = get_template_path(__file__)


def network_mode(mode: str) -> Tuple[str, str, str]:
    try:
        return NETWORK_MODES[mode]
    except KeyError:
        raise ComponentError(f"unsupported calico network mode {mode!r}") from None


def calico_nics(mode: str) -> Tuple[str, ...]:
    """Interfaces calico creates on a node for ``mode``."""
    ipip, vxlan, _ = NETWORK_MODES.get(mode, ('Never', 'Never', 'None'))
    nics: Tuple[str, ...] = ()
    if ipip != 'Never':
        nics += IPIP_NICS
    if vxlan != 'Never':
        nics += VXLAN_NICS
    return nics


@dataclass
class CalicoRunnable(Runnable):
    version: str = ''
    namespace: str = 'calico-system'
    cri_type: str = 'containerd'
    offline: bool = False
    local_registry: str = ''
    kube_version: str = ''
    dual_stack: bool = False
    pod_ipv4_cidr: str = ''
    pod_ipv6_cidr: str = ''
    kubelet_data_dir: str = '/var/lib/kubelet'
    manifest_dir: str = ''
    mode: str = NETWORK_VXLAN_ALL
    ip_manger: bool = True
    mtu: int = 1440
    node_address_detection_v4: NodeAddressDetection = field(default_factory=NodeAddressDetection)
    node_address_detection_v6: NodeAddressDetection = field(default_factory=NodeAddressDetection)

    def type(self) -> str:
        return CALICO_KIND

    def template_name(self) -> str:
        try:
            return VERSION_TEMPLATES[self.version]
        except KeyError:
            raise UnsupportedVersionError(CALICO, self.version) from None

    def init_step(self, metadata: ExtraMetadata, desired: Cluster, nodes: List[StepNode], **kwargs) -> 'CalicoRunnable':
        cni = desired.cni
        networking = desired.networking
        dual_stack = networking.ip_family == IPFamily.DUAL_STACK
        if not networking.pod_cidr_blocks:
            raise ComponentError(f"cluster {desired.name} has no pod CIDR")
        if dual_stack and len(networking.pod_cidr_blocks) < 2:
            raise ComponentError(f"dual-stack cluster {desired.name} needs an IPv6 pod CIDR")

        stepper = CalicoRunnable(
            version=cni.version,
            namespace=cni.namespace,
            cri_type=metadata.cri,
            offline=cni.offline,
            local_registry=cni.local_registry,
            kube_version=metadata.kube_version or desired.kubernetes_version,
            dual_stack=dual_stack,
            pod_ipv4_cidr=networking.pod_cidr_blocks[0],
            pod_ipv6_cidr=networking.pod_cidr_blocks[1] if dual_stack else '',
            kubelet_data_dir=metadata.kubelet_data_dir or desired.kubelet_data_dir,
            mode=cni.calico.mode,
            ip_manger=cni.calico.ip_manger,
            mtu=cni.calico.mtu,
            node_address_detection_v4=parse_node_address_detection(cni.calico.ipv4_auto_detection),
            node_address_detection_v6=parse_node_address_detection(cni.calico.ipv6_auto_detection),
        )
        stepper.set_action_steps(
            StepAction.INSTALL, stepper.load_image_steps(nodes) + stepper.install_steps(nodes, stepper.kube_version)
        )
        stepper.set_action_steps(StepAction.UNINSTALL, stepper.uninstall_steps(nodes))
        return stepper

    def _manifest_dir(self, options: Optional[Options] = None) -> str:
        if self.manifest_dir:
            return self.manifest_dir
        config = options.config if options is not None else get_config()
        return config.paths.manifest_dir

    def load_image_steps(self, nodes: List[StepNode]) -> List[Step]:
        if self.offline and not self.local_registry:
            return [load_image_step(self, CALICO_KIND, nodes)]
        return []

    def install_steps(self, nodes: List[StepNode], reference_version: str = '') -> List[Step]:
        self.template_name()
        kube_version = reference_version or self.kube_version
        manifest = os.path.join(self._manifest_dir(), MANIFEST_FILENAME)

        if is_high_kube_version(kube_version):
            chart = Chart(pkg_name=CALICO, version=self.version, offline=self.offline)
            steps = chart.install_steps(nodes)
            steps.append(render_yaml_step(self, CALICO_KIND, nodes))
            steps.append(install_release_step(
                RELEASE_NAME, OPERATOR_NAMESPACE,
                chart_path(get_config().paths.download_dir, CALICO, self.version), manifest, nodes,
            ))
            steps.append(apply_patch_step(os.path.join(self._manifest_dir(), PATCH_FILENAME), nodes))
            return steps

        return [render_yaml_step(self, CALICO_KIND, nodes), apply_yaml_step(manifest, nodes)]

    def uninstall_steps(self, nodes: List[StepNode]) -> List[Step]:
        if self.offline and not self.local_registry:
            return [remove_image_step(self, CALICO_KIND, nodes)]
        return []

    def cmd_list(self, namespace: str = '') -> Dict[str, str]:
        """kubectl commands used to inspect and restart calico."""
        namespace = namespace or self.namespace
        return {
            'get': f"kubectl get po -n {namespace} | grep calico",
            'restart': f"kubectl rollout restart ds calico-node -n {namespace}",
        }

    def template_context(self) -> Dict[str, Any]:
        ipip_mode, vxlan_mode, encapsulation = network_mode(self.mode)
        image_repo = f"{self.local_registry}/calico" if self.local_registry else 'docker.io/calico'
        return {
            'version': self.version,
            'namespace': self.namespace,
            'image_repo': image_repo,
            'local_registry': self.local_registry,
            'dual_stack': self.dual_stack,
            'pod_ipv4_cidr': self.pod_ipv4_cidr,
            'pod_ipv6_cidr': self.pod_ipv6_cidr,
            'kubelet_data_dir': self.kubelet_data_dir or '/var/lib/kubelet',
            'ip_manger': self.ip_manger,
            'mtu': self.mtu,
            'ipip_mode': ipip_mode,
            'vxlan_mode': vxlan_mode,
            'encapsulation': encapsulation,
            'backend': 'vxlan' if vxlan_mode != 'Never' else 'bird',
            'bgp_enabled': self.mode == NETWORK_BGP or ipip_mode != 'Never',
            'ipv4_detection': self.node_address_detection_v4,
            'ipv6_detection': self.node_address_detection_v6,
        }

    def render_manifest(self) -> str:
        return render_template(TEMPLATE_DIR, self.template_name(), **self.template_context())

    def render_values(self) -> str:
        return render_template(TEMPLATE_DIR, VALUES_TEMPLATE, **self.template_context())

    def render_patch(self) -> str:
        return render_template(TEMPLATE_DIR, PATCH_TEMPLATE, **self.template_context())

    def render(self, options: Options) -> None:
        manifest_dir = self._manifest_dir(options)
        if not options.dry_run:
            os.makedirs(manifest_dir, mode=0o755, exist_ok=True)
        manifest = os.path.join(manifest_dir, MANIFEST_FILENAME)

        if is_high_kube_version(self.kube_version):
            self.template_name()
            write_file_atomic(manifest, self.render_values(), dry_run=options.dry_run)
            write_file_atomic(os.path.join(manifest_dir, PATCH_FILENAME), self.render_patch(),
                              dry_run=options.dry_run)
        else:
            write_file_atomic(manifest, self.render_manifest(), dry_run=options.dry_run)
        logger.info(f"📝 Rendered calico {self.version} manifests into {manifest_dir}")

    def install(self, options: Options) -> Optional[bytes]:
        """Load the offline calico images into the runtime."""
        options.check_cancelled()
        instance = options.downloader.new_instance(CALICO, self.version, options.arch, False, options.dry_run)
        images = instance.download_images()
        if self.cri_type == 'docker':
            options.run("docker", "load", "-i", images, timeout=600)
        else:
            options.run("ctr", "--address", options.config.paths.containerd_socket, "--namespace", "k8s.io",
                        "images", "import", images, timeout=600)
        logger.info(f"✅ Loaded calico {self.version} images")
        return None

    def uninstall(self, options: Options) -> Optional[bytes]:
        instance = options.downloader.new_instance(CALICO, self.version, options.arch, False, options.dry_run)
        try:
            instance.remove_images()
        except Exception as e:
            logger.error(f"Failed to remove calico images: {e}")
        self.clear_nics(options)
        return None

    def clear_nics(self, options: Options) -> None:
        for nic in calico_nics(self.mode):
            try:
                options.run("ip", "link", "delete", nic)
                logger.debug(f"Deleted calico interface {nic}")
            except Exception as e:
                logger.warning(f"Failed to delete calico interface {nic}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'namespace': self.namespace,
            'cri_type': self.cri_type,
            'offline': self.offline,
            'local_registry': self.local_registry,
            'kube_version': self.kube_version,
            'dual_stack': self.dual_stack,
            'pod_ipv4_cidr': self.pod_ipv4_cidr,
            'pod_ipv6_cidr': self.pod_ipv6_cidr,
            'kubelet_data_dir': self.kubelet_data_dir,
            'manifest_dir': self.manifest_dir,
            'mode': self.mode,
            'ip_manger': self.ip_manger,
            'mtu': self.mtu,
            'node_address_detection_v4': {'type': self.node_address_detection_v4.type,
                                          'value': self.node_address_detection_v4.value},
            'node_address_detection_v6': {'type': self.node_address_detection_v6.type,
                                          'value': self.node_address_detection_v6.value},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CalicoRunnable':
        return cls(
            version=data.get('version', ''),
            namespace=data.get('namespace', 'calico-system'),
            cri_type=data.get('cri_type', 'containerd'),
            offline=bool(data.get('offline', False)),
            local_registry=data.get('local_registry', ''),
            kube_version=data.get('kube_version', ''),
            dual_stack=bool(data.get('dual_stack', False)),
            pod_ipv4_cidr=data.get('pod_ipv4_cidr', ''),
            pod_ipv6_cidr=data.get('pod_ipv6_cidr', ''),
            kubelet_data_dir=data.get('kubelet_data_dir', '/var/lib/kubelet'),
            manifest_dir=data.get('manifest_dir', ''),
            mode=data.get('mode', NETWORK_VXLAN_ALL),
            ip_manger=bool(data.get('ip_manger', True)),
            mtu=int(data.get('mtu', 1440)),
            node_address_detection_v4=NodeAddressDetection(**(data.get('node_address_detection_v4') or {})),
            node_address_detection_v6=NodeAddressDetection(**(data.get('node_address_detection_v6') or {})),
        )


