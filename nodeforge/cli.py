import logging
import sys
from typing import Optional

import typer

from nodeforge.commands import agent, node, registries, steps
from nodeforge.config import get_config
from nodeforge.errors import ConfigurationError
from nodeforge.logging import setup_logger

app = typer.Typer(help="Node provisioning for Kubernetes clusters")


def setup_logging(debug_mode: bool = False, level: Optional[str] = None):
    """Configure logging based on debug mode."""
    log_level = logging.DEBUG if debug_mode else (level or logging.INFO)
    setup_logger("nodeforge", log_level)
    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('kubernetes').setLevel(logging.WARNING)


app.command("registries")(registries.show_registries)
app.add_typer(steps.app, name="steps")
app.command("join-commands")(node.join_commands)
app.add_typer(agent.app, name="agent")
app.command("teardown")(node.teardown_containers)


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """nodeforge - container runtime and CNI provisioning."""
    level = None
    if not debug:
        try:
            level = get_config().logging.level
        except ConfigurationError as e:
            print(f"⚠️  Using default log level: {e}", file=sys.stderr)
    setup_logging(debug, level)
    if debug:
        logging.getLogger("nodeforge").debug("Debug mode enabled")


if __name__ == "__main__":
    app()
