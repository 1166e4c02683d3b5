import pytest

from nodeforge.cri.teardown import CtrClient, teardown, teardown_namespace
from nodeforge.errors import CommandError, ContainerNotFoundError, TeardownError


class FakeClient:
    """In-memory containerd namespace; ``errors`` maps (op, id) to an exception."""

    def __init__(self, containers, no_task=(), errors=None):
        self._containers = list(containers)
        self.no_task = set(no_task)
        self.errors = dict(errors or {})
        self.events = []

    def _maybe_fail(self, op, ident):
        self.events.append((op, ident))
        if (op, ident) in self.errors:
            raise self.errors[(op, ident)]

    def containers(self, namespace):
        return list(self._containers)

    def task(self, namespace, container_id):
        if container_id in self.no_task:
            raise ContainerNotFoundError(f"{container_id} has no task")
        return f"task-{container_id}"

    def kill(self, namespace, task_id, signal="SIGKILL"):
        self._maybe_fail("kill", task_id)

    def wait(self, namespace, task_id):
        self._maybe_fail("wait", task_id)
        return 137

    def delete_task(self, namespace, task_id):
        self._maybe_fail("delete_task", task_id)

    def delete_container(self, namespace, container_id):
        self._maybe_fail("delete_container", container_id)


def test_happy_path_order():
    client = FakeClient(["a"])
    teardown_namespace(client, "k8s.io")
    assert client.events == [
        ("kill", "task-a"), ("wait", "task-a"), ("delete_task", "task-a"), ("delete_container", "a"),
    ]


def test_container_without_task_is_still_deleted():
    client = FakeClient(["a", "b"], no_task={"a"})
    teardown_namespace(client, "k8s.io")
    assert ("delete_container", "a") in client.events
    assert ("kill", "task-a") not in client.events
    assert ("delete_container", "b") in client.events


def test_task_gone_during_kill_moves_on():
    client = FakeClient(["a", "b"], errors={("kill", "task-a"): ContainerNotFoundError("gone")})
    teardown_namespace(client, "k8s.io")
    assert ("delete_container", "a") not in client.events
    assert client.events[-1] == ("delete_container", "b")


def test_unexpected_kill_failure_aborts():
    client = FakeClient(["a", "b"], errors={("kill", "task-a"): PermissionError("denied")})
    with pytest.raises(TeardownError, match="task-a"):
        teardown_namespace(client, "k8s.io")
    assert all(ident != "b" for _, ident in client.events)


def test_cleanup_failures_are_logged_not_raised(caplog):
    client = FakeClient(["a", "b"], errors={
        ("wait", "task-a"): TimeoutError("slow"),
        ("delete_task", "task-a"): RuntimeError("busy"),
        ("delete_container", "a"): RuntimeError("in use"),
    })
    teardown_namespace(client, "k8s.io")
    assert client.events[-1] == ("delete_container", "b")
    assert "in use" in caplog.text


def test_teardown_uses_factory_with_socket():
    seen = []
    client = FakeClient([])

    def factory(socket):
        seen.append(socket)
        return client

    teardown("/run/k3s/containerd.sock", "k8s.io", client_factory=factory)
    assert seen == ["/run/k3s/containerd.sock"]


class ScriptedRunner:
    """Answers ctr invocations from a dict keyed by the subcommand words."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def __call__(self, args, dry_run=False, timeout=None):
        self.calls.append(args)
        sub = tuple(args[5:7])
        answer = self.answers.get(sub, "")
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, list):
            return answer.pop(0)
        return answer


TASKS_RUNNING = "TASK    PID     STATUS\nabc     1234    RUNNING\n"
TASKS_STOPPED = "TASK    PID     STATUS\nabc     1234    STOPPED\n"


def test_ctr_client_lists_containers_and_tasks():
    runner = ScriptedRunner({
        ("containers", "ls"): "abc\ndef\n",
        ("tasks", "ls"): TASKS_RUNNING,
    })
    client = CtrClient("/run/containerd/containerd.sock", runner=runner)
    assert client.containers("k8s.io") == ["abc", "def"]
    assert client.task("k8s.io", "abc") == "abc"
    with pytest.raises(ContainerNotFoundError):
        client.task("k8s.io", "def")
    assert runner.calls[0][:5] == ["ctr", "--address", "/run/containerd/containerd.sock", "--namespace", "k8s.io"]


def test_ctr_client_kill_not_found():
    runner = ScriptedRunner({("tasks", "kill"): CommandError(["ctr"], 1, "ctr: task abc: not found")})
    with pytest.raises(ContainerNotFoundError):
        CtrClient(runner=runner).kill("k8s.io", "abc")


def test_ctr_client_wait_polls_until_stopped():
    runner = ScriptedRunner({("tasks", "ls"): [TASKS_RUNNING, TASKS_STOPPED]})
    client = CtrClient(runner=runner, wait_timeout=5, poll_interval=0)
    assert client.wait("k8s.io", "abc") is None
    assert len(runner.calls) == 2
