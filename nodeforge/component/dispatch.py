"""Agent side execution of steps."""

import logging
from typing import List

from ..errors import ComponentError
from ..models import Command, CommandType, Step, StepAction
from .base import Options
from .registry import ComponentRegistry, ComponentRole

logger = logging.getLogger("nodeforge.component.dispatch")


def execute_command(registry: ComponentRegistry, step: Step, command: Command, options: Options) -> bytes:
    """Run one command of ``step`` on this node and return its output."""
    if command.type == CommandType.SHELL:
        return options.run(*command.shell_command, timeout=step.timeout.total_seconds() or None).encode('utf-8')

    registration = registry.resolve(command.identity)
    component = registration.factory().from_payload(command.custom_command)
    logger.debug(f"Dispatching {step.name} ({step.action.value}) to {registration.key}")

    if registration.role == ComponentRole.TEMPLATE:
        component.render(options)
        return b''
    if step.action == StepAction.INSTALL:
        return component.install(options) or b''
    if step.action == StepAction.UNINSTALL:
        return component.uninstall(options) or b''
    if step.action == StepAction.UPGRADE:
        return component.upgrade(options) or b''
    raise ComponentError(f"unknown step action {step.action}")


def execute_step(registry: ComponentRegistry, step: Step, options: Options) -> List[bytes]:
    """Run every command of ``step`` in order.

    A failing command stops the step unless the step is marked err_ignore, in
    which case the failure is logged and the next command runs.
    """
    outputs = []
    for command in step.commands:
        options.check_cancelled()
        try:
            outputs.append(execute_command(registry, step, command, options))
        except Exception as e:
            if not step.err_ignore:
                raise
            logger.warning(f"⚠️  Ignoring failure of step {step.name}: {e}")
            outputs.append(b'')
    logger.info(f"✅ Step {step.name} finished")
    return outputs
