"""Command groups of the nodeforge CLI."""
import functools
import logging
import sys

from ..errors import NodeforgeError


def handle_errors(func):
    """Turn nodeforge errors into a one-line message and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except NodeforgeError as e:
            logging.getLogger("nodeforge.cli").debug("command failed", exc_info=True)
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
    return wrapper
