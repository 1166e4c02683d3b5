import os
import tomllib

import pytest

from nodeforge.component.base import ExtraMetadata
from nodeforge.cri import containerd
from nodeforge.cri.containerd import (
    CONTAINERD_UNIT,
    ContainerdRegistryConfigure,
    ContainerdRunnable,
    match_pause_version,
)
from nodeforge.errors import CommandError, ComponentError, TeardownError
from nodeforge.models import Cluster, ContainerRuntime, RegistryAuth, RegistrySpec, StepAction

AUTH_REGISTRY = RegistrySpec("https", "harbor.local", registry_auth=RegistryAuth("admin", "s3cret"))


@pytest.fixture
def cluster():
    return Cluster(
        name="demo",
        kubernetes_version="v1.27.4",
        container_runtime=ContainerRuntime(version="1.6.4", data_root_dir="/data/containerd"),
    )


@pytest.mark.parametrize("kube_version,expected", [
    ("v1.18.20", ("3.2", "k8s.gcr.io")),
    ("v1.24.1", ("3.7", "k8s.gcr.io")),
    ("v1.25.0", ("3.8", "registry.k8s.io")),
    ("1.30.2", ("3.10", "registry.k8s.io")),
    ("v1.40.0", ("", "registry.k8s.io")),
    ("", ("", "k8s.gcr.io")),
])
def test_match_pause_version(kube_version, expected):
    assert match_pause_version(kube_version) == expected


def test_init_step_resolves_runtime(cluster, step_nodes):
    runtime = ContainerdRunnable().init_step(
        ExtraMetadata(cluster_name="demo", kube_version="v1.27.4", local_registry="10.0.0.5:5000"),
        cluster,
        step_nodes,
        registries=[RegistrySpec("https", "a"), AUTH_REGISTRY],
    )
    assert runtime.version == "1.6.4"
    assert runtime.data_root_dir == "/data/containerd"
    assert runtime.pause_version == "3.9"
    assert runtime.pause_registry == "registry.k8s.io"
    assert runtime.registry_with_auth == [AUTH_REGISTRY]

    install = runtime.get_action_steps(StepAction.INSTALL)
    uninstall = runtime.get_action_steps(StepAction.UNINSTALL)
    assert [s.name for s in install] == ["installRuntime"]
    assert [s.name for s in uninstall] == ["uninstallRuntime"]
    assert install[0].timeout.total_seconds() == 600
    assert install[0].retry_times == 1
    assert install[0].commands[0].identity == "containerd-v1-step"

    decoded = ContainerdRunnable.from_payload(install[0].commands[0].custom_command)
    assert decoded == runtime


def test_install_steps_require_version(step_nodes):
    with pytest.raises(ComponentError):
        ContainerdRunnable().install_steps(step_nodes)


def test_upgrade_not_supported(options):
    with pytest.raises(ComponentError):
        ContainerdRunnable(version="1.6.4").upgrade(options)


def test_render_config(options):
    runtime = ContainerdRunnable(
        version="1.6.4",
        local_registry="10.0.0.5:5000",
        pause_version="3.9",
        registries=[AUTH_REGISTRY],
    ).resolved("v1.27.4")
    doc = tomllib.loads(runtime.render_config(options))

    cri = doc["plugins"]["io.containerd.grpc.v1.cri"]
    assert cri["sandbox_image"] == "10.0.0.5:5000/pause:3.9"
    assert cri["containerd"]["runtimes"]["runc"]["options"]["SystemdCgroup"] is True
    assert cri["registry"]["config_path"] == options.config.paths.registry_config_dir
    assert cri["registry"]["configs"]["harbor.local"]["auth"] == {"username": "admin", "password": "s3cret"}
    assert doc["root"] == options.config.paths.containerd_data_dir


def test_render_config_online_uses_upstream_pause(options):
    runtime = ContainerdRunnable(version="1.6.4").resolved("v1.24.3")
    doc = tomllib.loads(runtime.render_config(options))
    assert doc["plugins"]["io.containerd.grpc.v1.cri"]["sandbox_image"] == "k8s.gcr.io/pause:3.7"


def test_install(options, downloader, services, runner, monkeypatch):
    monkeypatch.setattr(containerd, "is_running_systemd", lambda: False)
    runtime = ContainerdRunnable(version="1.6.4", registries=[RegistrySpec("https", "harbor.local")])
    runtime.install(options)

    paths = options.config.paths
    assert downloader.calls == [("configs", "containerd", "1.6.4")]
    with open(os.path.join(paths.containerd_config_dir, "config.toml"), "rb") as f:
        doc = tomllib.load(f)
    assert doc["plugins"]["io.containerd.grpc.v1.cri"]["containerd"]["runtimes"]["runc"]["options"]["SystemdCgroup"] is False
    assert os.path.exists(os.path.join(paths.registry_config_dir, "harbor.local", "hosts.toml"))
    assert services.calls == [("daemon-reload",), ("enable", CONTAINERD_UNIT), ("restart", CONTAINERD_UNIT)]
    assert runner.calls[-1] == ["crictl", "config", "runtime-endpoint", f"unix://{paths.containerd_socket}"]


def test_install_dry_run_touches_nothing(options, services, monkeypatch):
    monkeypatch.setattr(containerd, "is_running_systemd", lambda: True)
    options.dry_run = True
    ContainerdRunnable(version="1.6.4").install(options)
    assert not os.path.exists(options.config.paths.containerd_config_dir)
    assert services.calls == []


class RecordingClient:
    def __init__(self, containers=(), kill_error=None):
        self._containers = list(containers)
        self.kill_error = kill_error
        self.deleted = []

    def containers(self, namespace):
        return list(self._containers)

    def task(self, namespace, container_id):
        return container_id

    def kill(self, namespace, task_id, signal="SIGKILL"):
        if self.kill_error:
            raise self.kill_error

    def wait(self, namespace, task_id):
        return 137

    def delete_task(self, namespace, task_id):
        pass

    def delete_container(self, namespace, container_id):
        self.deleted.append(container_id)


def make_socket(options):
    socket = options.config.paths.containerd_socket
    os.makedirs(os.path.dirname(socket), exist_ok=True)
    open(socket, "w").close()


def test_uninstall(options, downloader, services):
    make_socket(options)
    client = RecordingClient(containers=["c1", "c2"])
    options.container_client_factory = lambda socket: client
    data_dir = options.config.paths.containerd_data_dir
    os.makedirs(data_dir)

    ContainerdRunnable(version="1.6.4").uninstall(options)

    assert client.deleted == ["c1", "c2"]
    assert ("remove_configs", "containerd", "1.6.4") in downloader.calls
    assert services.calls == [("stop", CONTAINERD_UNIT), ("disable", CONTAINERD_UNIT), ("daemon-reload",)]
    assert not os.path.exists(data_dir)
    assert not os.path.exists(options.config.paths.containerd_run_dir)


def test_uninstall_tolerates_service_and_config_errors(options, fakes, caplog):
    options.services = fakes.Services(fail={"stop", "disable", "daemon-reload"})
    options.downloader = fakes.Downloader(fail={"remove_configs"})
    ContainerdRunnable(version="1.6.4").uninstall(options)
    assert "Failed to remove containerd configs" in caplog.text


def test_uninstall_propagates_teardown_failure(options):
    make_socket(options)
    options.container_client_factory = lambda socket: RecordingClient(["c1"], kill_error=RuntimeError("EPERM"))
    with pytest.raises(TeardownError):
        ContainerdRunnable(version="1.6.4").uninstall(options)


def test_registry_configure_install(options, services):
    paths = options.config.paths
    os.makedirs(os.path.join(paths.registry_config_dir, "old.local"))
    runtime = ContainerdRunnable(version="1.6.4", registries=[AUTH_REGISTRY]).resolved("v1.27.4")
    configure = ContainerdRegistryConfigure.for_registries([AUTH_REGISTRY], runtime=runtime)

    configure.install(options)

    assert sorted(os.listdir(paths.registry_config_dir)) == ["harbor.local"]
    with open(os.path.join(paths.containerd_config_dir, "config.toml"), "rb") as f:
        doc = tomllib.load(f)
    assert "harbor.local" in doc["plugins"]["io.containerd.grpc.v1.cri"]["registry"]["configs"]
    assert services.calls == [("daemon-reload",), ("restart", CONTAINERD_UNIT)]


def test_registry_configure_restart_failure_propagates(options, fakes):
    options.services = fakes.Services(fail={"restart"})
    configure = ContainerdRegistryConfigure.for_registries([RegistrySpec("https", "a")])
    with pytest.raises(CommandError):
        configure.install(options)


def test_registry_configure_dry_run(options, services):
    options.dry_run = True
    ContainerdRegistryConfigure.for_registries([RegistrySpec("https", "a")]).install(options)
    assert not os.path.exists(options.config.paths.registry_config_dir)
    assert services.calls == []


def test_registry_configure_has_no_uninstall_steps(step_nodes):
    assert ContainerdRegistryConfigure().uninstall_steps(step_nodes) == []
