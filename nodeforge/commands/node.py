from typing import Optional

import typer

from ..config import get_config
from ..cri.teardown import K8S_NAMESPACE, teardown
from ..errors import ConfigurationError
from ..k8s.kubeadm import extract_join_commands
from . import handle_errors


@handle_errors
def teardown_containers(
    namespace: str = typer.Option(K8S_NAMESPACE, "--namespace", help="containerd namespace"),
    socket: Optional[str] = typer.Option(None, "--socket", help="containerd socket path"),
):
    """Kill and delete every container of a containerd namespace."""
    socket = socket or get_config().paths.containerd_socket
    print(f"🧹 Tearing down namespace {namespace} on {socket}")
    teardown(socket, namespace)
    print("✅ Teardown complete")


@handle_errors
def join_commands(file: str = typer.Argument(..., help="File holding kubeadm init output")):
    """Print the control-plane and worker join commands from kubeadm output."""
    try:
        with open(file) as f:
            output = f.read()
    except OSError as e:
        raise ConfigurationError(f"Failed to read {file}: {e}") from e
    master, worker = extract_join_commands(output)
    print(f"master: {master}")
    print(f"worker: {worker}")
