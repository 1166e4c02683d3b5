"""Cluster and node store adapters used by the registry reconciler."""

import logging
from typing import Dict, Iterable, List, Optional, Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import RegistryLookupError, RegistryNotFoundError
from .models import Node, RegistryAuth, RegistrySpec
from .utils.kube import load_kubeconfig

logger = logging.getLogger("nodeforge.store")

LABEL_CLUSTER_NAME = "kubeclipper.io/cluster"

API_GROUP = "core.kubeclipper.io"
API_VERSION = "v1"


class ClusterStore(Protocol):
    """What the reconciler needs from the cluster/node store."""

    def list_nodes(self, label_selector: str) -> List[Node]:
        ...

    def get_registry(self, name: str) -> RegistrySpec:
        """Return the named registry or raise RegistryNotFoundError."""
        ...


def _match_selector(labels: Dict[str, str], label_selector: str) -> bool:
    for term in filter(None, (t.strip() for t in label_selector.split(','))):
        if '=' in term:
            key, value = term.split('=', 1)
            if labels.get(key.rstrip('=')) != value:
                return False
        elif term not in labels:
            return False
    return True


class StaticClusterStore:
    """In-memory store, fed from YAML files by the CLI."""

    def __init__(self, nodes: Optional[Iterable[Node]] = None, registries: Optional[Dict[str, RegistrySpec]] = None):
        self.nodes = list(nodes or [])
        self.registries = dict(registries or {})

    def list_nodes(self, label_selector: str) -> List[Node]:
        return [n for n in self.nodes if _match_selector(n.labels, label_selector)]

    def get_registry(self, name: str) -> RegistrySpec:
        try:
            return self.registries[name]
        except KeyError:
            raise RegistryNotFoundError(name) from None

    @classmethod
    def from_dict(cls, data: Dict) -> 'StaticClusterStore':
        nodes = [Node.from_dict(n) for n in data.get('nodes') or []]
        registries = {name: RegistrySpec.from_dict(spec) for name, spec in (data.get('registries') or {}).items()}
        return cls(nodes=nodes, registries=registries)


class KubernetesClusterStore:
    """Reads node and registry objects from the management cluster API."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None, kubeconfig: Optional[str] = None):
        if api is None:
            source = load_kubeconfig(kubeconfig)
            logger.debug(f"Loaded kubeconfig from {source}")
            api = client.CustomObjectsApi()
        self.api = api

    def list_nodes(self, label_selector: str) -> List[Node]:
        try:
            resp = self.api.list_cluster_custom_object(
                API_GROUP, API_VERSION, "nodes", label_selector=label_selector
            )
        except ApiException as e:
            raise RegistryLookupError(f"list nodes with selector {label_selector}: {e.reason}") from e
        nodes = []
        for item in resp.get('items', []):
            meta = item.get('metadata', {})
            status = item.get('status', {})
            nodes.append(Node(
                name=meta['name'],
                ipv4=status.get('ipv4DefaultIP', ''),
                node_ipv4=status.get('nodeIpv4DefaultIP', ''),
                hostname=status.get('nodeInfo', {}).get('hostname', ''),
                labels=meta.get('labels') or {},
            ))
        return nodes

    def get_registry(self, name: str) -> RegistrySpec:
        try:
            obj = self.api.get_cluster_custom_object(API_GROUP, API_VERSION, "registries", name)
        except ApiException as e:
            if e.status == 404:
                raise RegistryNotFoundError(name) from e
            raise
        spec = obj.get('spec', obj)
        auth = spec.get('registryAuth')
        return RegistrySpec(
            scheme=spec.get('scheme', 'https'),
            host=spec['host'],
            skip_verify=bool(spec.get('skipVerify', False)),
            ca=spec.get('ca') or '',
            registry_auth=RegistryAuth(auth.get('username', ''), auth.get('password', '')) if auth else None,
        )
