import json
from typing import List, Optional

import typer

from ..cni.calico import CalicoRunnable
from ..component.base import ExtraMetadata, Runnable
from ..cri.containerd import ContainerdRunnable
from ..errors import ComponentError
from ..models import Cluster, Node, StepAction, StepNode
from ..registries import compute_desired_registries
from ..utils import load_yaml
from . import handle_errors
from .registries import load_store

app = typer.Typer(help="Generate component steps")

COMPONENTS = {
    'containerd': ContainerdRunnable,
    'calico': CalicoRunnable,
}


def load_nodes(nodes_file: Optional[str]) -> List[StepNode]:
    if not nodes_file:
        return []
    return [Node.from_dict(n).to_step_node() for n in load_yaml(nodes_file).get('nodes') or []]


def build_component(component: str, cluster: Cluster, nodes: List[StepNode], store_file: Optional[str]) -> Runnable:
    factory = COMPONENTS.get(component)
    if factory is None:
        raise ComponentError(f"unknown component {component}, expected one of {', '.join(COMPONENTS)}")
    metadata = ExtraMetadata(
        cluster_name=cluster.name,
        kube_version=cluster.kubernetes_version,
        cri=cluster.container_runtime.type,
        offline=cluster.cni.offline,
        local_registry=cluster.cni.local_registry,
        kubelet_data_dir=cluster.kubelet_data_dir,
    )
    kwargs = {}
    if component == 'containerd':
        kwargs['registries'], _ = compute_desired_registries(cluster, load_store(store_file))
    return factory().init_step(metadata, cluster, nodes, **kwargs)


def print_steps(action: StepAction, component: str, cluster_file: str,
                nodes_file: Optional[str], store_file: Optional[str]) -> None:
    cluster = Cluster.from_dict(load_yaml(cluster_file))
    runnable = build_component(component, cluster, load_nodes(nodes_file), store_file)
    print(json.dumps([s.to_dict() for s in runnable.get_action_steps(action)], indent=2))


@app.command("install")
@handle_errors
def install_steps(
    component: str = typer.Argument(..., help="Component: containerd or calico"),
    cluster_file: str = typer.Argument(..., help="Cluster YAML file"),
    nodes_file: Optional[str] = typer.Option(None, "--nodes-file", help="YAML with the target nodes"),
    store_file: Optional[str] = typer.Option(None, "--store-file", help="YAML with named registries"),
):
    """Print the install steps of a component."""
    print_steps(StepAction.INSTALL, component, cluster_file, nodes_file, store_file)


@app.command("uninstall")
@handle_errors
def uninstall_steps(
    component: str = typer.Argument(..., help="Component: containerd or calico"),
    cluster_file: str = typer.Argument(..., help="Cluster YAML file"),
    nodes_file: Optional[str] = typer.Option(None, "--nodes-file", help="YAML with the target nodes"),
    store_file: Optional[str] = typer.Option(None, "--store-file", help="YAML with named registries"),
):
    """Print the uninstall steps of a component."""
    print_steps(StepAction.UNINSTALL, component, cluster_file, nodes_file, store_file)
