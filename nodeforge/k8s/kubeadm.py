"""kubeadm output parsing and cleanup step helpers."""

import re
from datetime import timedelta
from typing import List, Tuple

from ..models import Command, Step, StepAction, StepNode

JOIN_START = re.compile(r'kubeadm join')
MASTER_JOIN_PATTERN = re.compile(r'kubeadm join.*?--control-plane.*?--certificate-key\s+\S+')
WORKER_JOIN_PATTERN = re.compile(r'kubeadm join.*?--token\s+\S+.*?--discovery-token-ca-cert-hash\s+\S+')


def sanitize_command(output: str) -> str:
    """Join backslash continuations and collapse whitespace into single spaces."""
    return " ".join(output.replace("\\\n", " ").split())


def split_join_commands(cleaned: str) -> List[str]:
    """Cut sanitized output into pieces that each start at one ``kubeadm join``."""
    starts = [m.start() for m in JOIN_START.finditer(cleaned)]
    return [cleaned[s:e] for s, e in zip(starts, starts[1:] + [len(cleaned)])]


def extract_join_commands(output: str) -> Tuple[str, str]:
    """Pull the control-plane and worker join commands out of ``kubeadm init`` output.

    The two commands may appear in either order; each is matched within its
    own piece of the output so a match never runs into the next command.

    Returns:
        tuple: (master, worker); either is '' when not found.
    """
    master, worker = '', ''
    for piece in split_join_commands(sanitize_command(output)):
        if '--control-plane' in piece:
            m = MASTER_JOIN_PATTERN.match(piece)
            if m and not master:
                master = m.group(0)
            continue
        m = WORKER_JOIN_PATTERN.match(piece)
        if m and not worker:
            worker = m.group(0)
    return master, worker


def command_remove_step(name: str, nodes: List[StepNode], *dirs: str) -> Step:
    """Best-effort uninstall step that removes ``dirs`` on every node."""
    return Step(
        name=name,
        action=StepAction.UNINSTALL,
        timeout=timedelta(seconds=5),
        err_ignore=True,
        retry_times=1,
        nodes=tuple(nodes),
        commands=(Command.shell("rm", "-rf", *dirs),),
    )
