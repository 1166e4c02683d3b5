"""Jinja2 rendering of the manifests and config files shipped with nodeforge."""

import logging
import os
from typing import Any

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ..errors import ConfigurationError

logger = logging.getLogger("nodeforge.utils.template")

_environments = {}


def get_template_path(module_file: str) -> str:
    """Templates directory that sits next to ``module_file``."""
    return os.path.join(os.path.dirname(os.path.abspath(module_file)), 'templates')


def _environment(template_dir: str) -> Environment:
    env = _environments.get(template_dir)
    if env is None:
        env = Environment(
            loader=FileSystemLoader(template_dir),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,  # Raise error for undefined variables
        )
        _environments[template_dir] = env
    return env


def render_template(template_dir: str, name: str, **context: Any) -> str:
    """Render ``name`` from ``template_dir``.

    Raises:
        ConfigurationError: If the template is missing, invalid, or refers to
            a variable that was not supplied
    """
    try:
        template = _environment(template_dir).get_template(name)
        return template.render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"Template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Template syntax error in {name}: {e}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Missing required template variable in {name}: {e}") from e
