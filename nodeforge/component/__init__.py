"""Installable node components and the machinery to dispatch them."""

from .base import ExtraMetadata, Options, Runnable
from .registry import ComponentRegistry, ComponentRole, component_key, default_registry
from .dispatch import execute_command, execute_step

__all__ = [
    'ExtraMetadata',
    'Options',
    'Runnable',
    'ComponentRegistry',
    'ComponentRole',
    'component_key',
    'default_registry',
    'execute_command',
    'execute_step',
]
