"""Graceful teardown of the containers of a containerd namespace.

Used before a runtime is uninstalled. Containers are handled one at a time:
kill the task, wait for it to exit, delete the task, delete the container.
Only an unexpected kill failure stops the sequence; everything else is
logged so the uninstall can finish.
"""

import logging
import time
from typing import Callable, List, Optional, Protocol

from ..errors import CommandError, ContainerNotFoundError, TeardownError
from ..utils.system import run_cmd

logger = logging.getLogger("nodeforge.cri.teardown")

DEFAULT_SOCKET = "/run/containerd/containerd.sock"
K8S_NAMESPACE = "k8s.io"


class ContainerClient(Protocol):
    """The subset of the containerd API the teardown sequence uses."""

    def containers(self, namespace: str) -> List[str]:
        ...

    def task(self, namespace: str, container_id: str) -> str:
        """Return the task id of a container; raise ContainerNotFoundError if it has none."""
        ...

    def kill(self, namespace: str, task_id: str, signal: str = "SIGKILL") -> None:
        ...

    def wait(self, namespace: str, task_id: str) -> Optional[int]:
        ...

    def delete_task(self, namespace: str, task_id: str) -> None:
        ...

    def delete_container(self, namespace: str, container_id: str) -> None:
        ...


class CtrClient:
    """ContainerClient driving the ``ctr`` CLI against a containerd socket."""

    def __init__(self, socket_path: str = DEFAULT_SOCKET, runner: Callable[..., str] = run_cmd,
                 wait_timeout: float = 30, poll_interval: float = 0.5):
        self.socket_path = socket_path
        self.runner = runner
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval

    def _ctr(self, namespace: str, *args: str) -> str:
        return self.runner(["ctr", "--address", self.socket_path, "--namespace", namespace, *args], timeout=60)

    def _tasks(self, namespace: str) -> dict:
        tasks = {}
        for line in self._ctr(namespace, "tasks", "ls").splitlines()[1:]:
            fields = line.split()
            if len(fields) >= 3:
                tasks[fields[0]] = fields[2]
        return tasks

    def containers(self, namespace: str) -> List[str]:
        return [line.strip() for line in self._ctr(namespace, "containers", "ls", "-q").splitlines() if line.strip()]

    def task(self, namespace: str, container_id: str) -> str:
        if container_id not in self._tasks(namespace):
            raise ContainerNotFoundError(f"container {container_id} has no task")
        return container_id

    def kill(self, namespace: str, task_id: str, signal: str = "SIGKILL") -> None:
        try:
            self._ctr(namespace, "tasks", "kill", "--signal", signal, task_id)
        except CommandError as e:
            if "not found" in e.output.lower():
                raise ContainerNotFoundError(f"task {task_id} not found") from e
            raise

    def wait(self, namespace: str, task_id: str) -> Optional[int]:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            status = self._tasks(namespace).get(task_id)
            if status is None or status.upper() == "STOPPED":
                return None
            if time.monotonic() >= deadline:
                raise TeardownError(f"task {task_id} still {status} after {self.wait_timeout}s")
            time.sleep(self.poll_interval)

    def delete_task(self, namespace: str, task_id: str) -> None:
        self._ctr(namespace, "tasks", "delete", task_id)

    def delete_container(self, namespace: str, container_id: str) -> None:
        self._ctr(namespace, "containers", "delete", container_id)


def teardown_namespace(client: ContainerClient, namespace: str) -> None:
    """Kill and remove every container of ``namespace``.

    Raises:
        TeardownError: If killing a task fails for a reason other than the
            task having disappeared.
    """
    container_ids = client.containers(namespace)
    logger.info(f"Namespace {namespace} has {len(container_ids)} container(s): {container_ids}")

    for container_id in container_ids:
        logger.debug(f"Attempt to kill and delete task belonging to container {container_id}")
        try:
            task_id = client.task(namespace, container_id)
        except Exception as e:
            logger.warning(f"Failed to get task of container {container_id}, it may have no task at all, moving on: {e}")
            task_id = None

        if task_id is not None:
            try:
                client.kill(namespace, task_id)
            except ContainerNotFoundError as e:
                logger.error(f"Task kill {task_id} error: {e}")
                continue
            except Exception as e:
                logger.error(f"Failed to kill task {task_id}: {e}")
                raise TeardownError(f"kill task {task_id} in namespace {namespace}: {e}") from e
            logger.debug(f"Task {task_id} killed, waiting for exit")

            try:
                code = client.wait(namespace, task_id)
                logger.debug(f"Got task {task_id} exit status {code}")
            except Exception as e:
                logger.error(f"Failed to wait for task {task_id}: {e}")

            try:
                client.delete_task(namespace, task_id)
                logger.debug(f"Task {task_id} deleted")
            except Exception as e:
                logger.error(f"(ignored) Failed to delete task {task_id}, it has already been killed: {e}")

        logger.debug(f"Attempt to delete container {container_id}")
        try:
            client.delete_container(namespace, container_id)
        except Exception as e:
            logger.error(f"(ignored) Failed to delete container {container_id}: {e}")


def teardown(socket_path: str = DEFAULT_SOCKET, namespace: str = K8S_NAMESPACE,
             client_factory: Optional[Callable[[str], ContainerClient]] = None) -> None:
    """Tear down ``namespace`` on the containerd listening at ``socket_path``."""
    client = (client_factory or CtrClient)(socket_path)
    teardown_namespace(client, namespace)
