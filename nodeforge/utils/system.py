"""Local command execution and systemd unit control."""

import logging
import os
import shlex
import shutil
import subprocess
from typing import List, Optional, Sequence

from ..errors import CommandError

logger = logging.getLogger("nodeforge.utils.system")


def run_cmd(args: Sequence[str], dry_run: bool = False, timeout: Optional[float] = None) -> str:
    """Run a command on the local node and return its combined output.

    Args:
        args: Command and arguments
        dry_run: Only log the command
        timeout: Seconds before the command is killed

    Returns:
        str: stdout and stderr of the command

    Raises:
        CommandError: If the command exits non-zero, times out or cannot be started
    """
    cmd = list(args)
    if dry_run:
        logger.debug(f"[dry-run] {shlex.join(cmd)}")
        return ""
    logger.debug(f"Executing: {shlex.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, -1, f"timed out after {timeout}s") from e
    except OSError as e:
        raise CommandError(cmd, -1, str(e)) from e
    if result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stdout or "")
    return result.stdout or ""


def is_running_systemd() -> bool:
    """Whether systemd is the init system (and so the cgroup manager) of this host."""
    return os.path.isdir("/run/systemd/system")


class SystemdServiceManager:
    """Thin wrapper around systemctl. Every operation is safe to repeat."""

    def __init__(self, runner=run_cmd, timeout: float = 120):
        self.runner = runner
        self.timeout = timeout

    def _systemctl(self, *args: str) -> str:
        return self.runner(["systemctl", *args], timeout=self.timeout)

    def reload_daemon(self) -> None:
        self._systemctl("daemon-reload")

    def enable(self, unit: str) -> None:
        self._systemctl("enable", unit)

    def disable(self, unit: str) -> None:
        self._systemctl("disable", unit)

    def stop(self, unit: str) -> None:
        self._systemctl("stop", unit)

    def restart(self, unit: str) -> None:
        self._systemctl("restart", unit)


def remove_paths(paths: List[str]) -> None:
    """Best effort ``rm -rf`` of each path; failures are logged."""
    for path in paths:
        if not os.path.lexists(path):
            continue
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            logger.debug(f"Removed {path}")
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")
