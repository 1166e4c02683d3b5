"""Registry reconciliation.

Computes the set of registries a cluster's container runtime must trust and
decides whether the nodes need a registry update step.

Every list produced here is kept sorted by identity key (scheme + host) with no
duplicate keys, so two lists can be compared element by element.
"""

import bisect
import json
import logging
from typing import Any, List, Optional, Sequence, Tuple

from .errors import NodeforgeError, RegistryLookupError, RegistryNotFoundError
from .models import Cluster, CRIRegistry, Node, RegistrySpec, Step
from .store import LABEL_CLUSTER_NAME, ClusterStore

logger = logging.getLogger("nodeforge.registries")


def insert_unique_host(hosts: List[str], host: str) -> List[str]:
    """Insert ``host`` into the sorted ``hosts`` list unless already present."""
    idx = bisect.bisect_left(hosts, host)
    if idx == len(hosts) or hosts[idx] != host:
        hosts.insert(idx, host)
    return hosts


def append_unique_registry(registries: List[RegistrySpec], *items: RegistrySpec) -> List[RegistrySpec]:
    """Merge ``items`` into the sorted ``registries`` list.

    An item whose identity key is already present is dropped; the entry that
    got there first wins.
    """
    for item in items:
        key = item.key
        idx = bisect.bisect_left(registries, key, key=lambda r: r.key)
        if idx == len(registries) or registries[idx].key != key:
            registries.insert(idx, item)
    return registries


def insecure_pair(host: str) -> Tuple[RegistrySpec, RegistrySpec]:
    """Plain http plus https-without-verification entries for an insecure host."""
    return (
        RegistrySpec(scheme='http', host=host),
        RegistrySpec(scheme='https', host=host, skip_verify=True),
    )


def parse_addon_mirror(config: Any) -> str:
    """Return the ``imageRepoMirror`` of an addon config, or '' if it has none.

    Addon configs are opaque; anything that does not decode into an object
    with a string mirror field is ignored.
    """
    data = config
    if isinstance(config, (bytes, bytearray, str)):
        try:
            data = json.loads(config)
        except ValueError:
            return ''
    if not isinstance(data, dict):
        return ''
    mirror = data.get('imageRepoMirror', '')
    if not isinstance(mirror, str):
        return ''
    return mirror


def compute_desired_registries(
    cluster: Cluster, store: ClusterStore
) -> Tuple[List[RegistrySpec], List[CRIRegistry]]:
    """Compute the registries the cluster runtime must trust.

    Args:
        cluster: Desired cluster state. It is not modified.
        store: Used to resolve named registry references.

    Returns:
        tuple: (registries sorted by identity key, explicit registry entries
        that are still valid). A reference to a registry that no longer
        exists is left out of the second list; persisting that list is up to
        the caller.

    Raises:
        RegistryLookupError: If resolving a reference fails for any reason
            other than the registry not existing.
    """
    insecure = sorted(cluster.container_runtime.insecure_registry)
    for addon in cluster.addons:
        mirror = parse_addon_mirror(addon.config)
        if mirror:
            insert_unique_host(insecure, mirror)

    registries: List[RegistrySpec] = []
    for host in insecure:
        append_unique_registry(registries, *insecure_pair(host))

    valid: List[CRIRegistry] = []
    for reg in cluster.container_runtime.registries:
        if not reg.registry_ref:
            append_unique_registry(registries, *insecure_pair(reg.insecure_registry))
            valid.append(CRIRegistry(insecure_registry=reg.insecure_registry, registry_ref=None))
            continue
        try:
            spec = store.get_registry(reg.registry_ref)
        except RegistryNotFoundError:
            logger.info(f"Registry {reg.registry_ref} referenced by cluster {cluster.name} no longer exists, dropping it")
            continue
        except Exception as e:
            raise RegistryLookupError(f"get registry {reg.registry_ref}: {e}") from e
        append_unique_registry(registries, spec)
        valid.append(reg)

    return registries, valid


def needs_update(recorded: Sequence[RegistrySpec], desired: Sequence[RegistrySpec]) -> bool:
    """True if the recorded registry list differs from the desired one."""
    if len(recorded) != len(desired):
        return True
    return any(a != b for a, b in zip(recorded, desired))


def cri_registry_update_step(cluster: Cluster, registries: List[RegistrySpec], nodes: List[Node]) -> Step:
    """Build the step that pushes a new registry set to every cluster node."""
    from .cri.containerd import ContainerdRegistryConfigure, ContainerdRunnable

    runtime = ContainerdRunnable(
        version=cluster.container_runtime.version,
        offline=cluster.cni.offline,
        data_root_dir=cluster.container_runtime.data_root_dir,
        local_registry=cluster.cni.local_registry,
        registries=list(registries),
    ).resolved(kube_version=cluster.kubernetes_version)
    configure = ContainerdRegistryConfigure.for_registries(registries, runtime=runtime)
    return configure.install_steps([n.to_step_node() for n in nodes])[0]


def get_cri_registries_step(
    cluster: Cluster, registries: List[RegistrySpec], store: ClusterStore
) -> Optional[Step]:
    """Return an update step if the recorded registries are stale, else None."""
    if not needs_update(cluster.status.registries, registries):
        return None
    selector = f"{LABEL_CLUSTER_NAME}={cluster.name}"
    try:
        nodes = store.list_nodes(selector)
    except NodeforgeError:
        raise
    except Exception as e:
        raise RegistryLookupError(f"list nodes of cluster {cluster.name}: {e}") from e
    logger.info(f"🔄 Registries of cluster {cluster.name} changed, updating {len(nodes)} node(s)")
    return cri_registry_update_step(cluster, registries, nodes)
