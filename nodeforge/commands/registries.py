import json
from typing import Optional

import typer

from ..models import Cluster
from ..registries import compute_desired_registries, get_cri_registries_step
from ..store import StaticClusterStore
from ..utils import load_yaml
from . import handle_errors


def load_store(store_file: Optional[str]) -> StaticClusterStore:
    if not store_file:
        return StaticClusterStore()
    return StaticClusterStore.from_dict(load_yaml(store_file))


@handle_errors
def show_registries(
    cluster_file: str = typer.Argument(..., help="Cluster YAML file"),
    store_file: Optional[str] = typer.Option(None, "--store-file", help="YAML with nodes and named registries"),
):
    """Print the registries the cluster runtime must trust."""
    cluster = Cluster.from_dict(load_yaml(cluster_file))
    store = load_store(store_file)
    registries, valid = compute_desired_registries(cluster, store)
    step = get_cri_registries_step(cluster, registries, store)
    print(json.dumps({
        'registries': [r.to_dict() for r in registries],
        'valid_registries': [{'insecure_registry': r.insecure_registry, 'registry_ref': r.registry_ref} for r in valid],
        'update_step': step.to_dict() if step else None,
    }, indent=2))
