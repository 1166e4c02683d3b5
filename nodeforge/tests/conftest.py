from types import SimpleNamespace

import pytest

from nodeforge.component.base import Options
from nodeforge.config import NodeforgeConfig, PathsConfig, RegistryConfig, set_config
from nodeforge.errors import CommandError
from nodeforge.models import StepNode


class FakeRunner:
    """Records commands; ``fail`` maps a command prefix to the error output."""

    def __init__(self, fail=None):
        self.calls = []
        self.fail = dict(fail or {})

    def __call__(self, args, dry_run=False, timeout=None):
        args = list(args)
        self.calls.append(args)
        for prefix, output in self.fail.items():
            if args[:len(prefix)] == list(prefix):
                raise CommandError(args, 1, output)
        return ""


class FakeServices:
    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    def _record(self, op, unit=None):
        self.calls.append((op, unit) if unit else (op,))
        if op in self.fail:
            raise CommandError(["systemctl", op], 1, "boom")

    def reload_daemon(self):
        self._record("daemon-reload")

    def enable(self, unit):
        self._record("enable", unit)

    def disable(self, unit):
        self._record("disable", unit)

    def stop(self, unit):
        self._record("stop", unit)

    def restart(self, unit):
        self._record("restart", unit)


class FakePackage:
    def __init__(self, owner, kind, version, arch, online, dry_run):
        self.owner = owner
        self.kind = kind
        self.version = version
        self.arch = arch
        self.online = online
        self.dry_run = dry_run

    def _record(self, op):
        self.owner.calls.append((op, self.kind, self.version))
        if op in self.owner.fail:
            raise OSError(f"{op} failed")

    def download_and_unpack_configs(self, dest="/"):
        self._record("configs")
        return []

    def remove_configs(self):
        self._record("remove_configs")

    def download_images(self):
        self._record("images")
        return f"/tmp/.{self.kind}/{self.version}/images.tar.gz"

    def remove_images(self):
        self._record("remove_images")

    def download_chart(self):
        self._record("chart")
        return f"/tmp/.{self.kind}/{self.version}/charts.tgz"

    def remove_chart(self):
        self._record("remove_chart")


class FakeDownloader:
    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    def new_instance(self, kind, version, arch, online, dry_run):
        return FakePackage(self, kind, version, arch, online, dry_run)


@pytest.fixture(autouse=True)
def reset_config():
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def node_config(tmp_path):
    config = NodeforgeConfig(
        paths=PathsConfig(
            containerd_config_dir=str(tmp_path / "etc" / "containerd"),
            registry_config_dir=str(tmp_path / "etc" / "containerd" / "certs.d"),
            containerd_data_dir=str(tmp_path / "var" / "lib" / "containerd"),
            containerd_run_dir=str(tmp_path / "run" / "containerd"),
            containerd_socket=str(tmp_path / "run" / "containerd" / "containerd.sock"),
            manifest_dir=str(tmp_path / "cni"),
            download_dir=str(tmp_path / "pkgs"),
        ),
        registry=RegistryConfig(repo_mirror="", package_mirror=""),
    )
    set_config(config)
    return config


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def downloader():
    return FakeDownloader()


@pytest.fixture
def options(node_config, runner, services, downloader):
    return Options(
        config=node_config,
        downloader=downloader,
        services=services,
        runner=runner,
        arch="amd64",
    )


@pytest.fixture
def step_nodes():
    return [
        StepNode(id="node-1", ipv4="10.0.0.1", node_ipv4="10.0.0.1", hostname="master-1"),
        StepNode(id="node-2", ipv4="10.0.0.2", node_ipv4="10.0.0.2", hostname="worker-1"),
    ]


@pytest.fixture
def fakes():
    """The fake classes, for tests that need a customised instance."""
    return SimpleNamespace(
        Runner=FakeRunner,
        Services=FakeServices,
        Downloader=FakeDownloader,
    )
