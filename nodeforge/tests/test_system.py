import pytest

from nodeforge.errors import CommandError
from nodeforge.utils.system import SystemdServiceManager, remove_paths, run_cmd


def test_service_manager_drives_systemctl(runner):
    services = SystemdServiceManager(runner=runner)
    services.reload_daemon()
    services.enable("containerd.service")
    services.restart("containerd.service")
    services.stop("containerd.service")
    services.disable("containerd.service")
    assert runner.calls == [
        ["systemctl", "daemon-reload"],
        ["systemctl", "enable", "containerd.service"],
        ["systemctl", "restart", "containerd.service"],
        ["systemctl", "stop", "containerd.service"],
        ["systemctl", "disable", "containerd.service"],
    ]


def test_run_cmd_dry_run_does_nothing():
    assert run_cmd(["definitely-not-a-command"], dry_run=True) == ""


def test_run_cmd_missing_binary():
    with pytest.raises(CommandError):
        run_cmd(["definitely-not-a-command-nodeforge"])


def test_remove_paths(tmp_path):
    directory = tmp_path / "data"
    directory.mkdir()
    (directory / "file").write_text("x")
    remove_paths([str(directory), str(tmp_path / "absent")])
    assert not directory.exists()
