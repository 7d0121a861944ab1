"""Core functionality for sysstate."""

from .config import Config
from .context import StateContext
from .manager import StateManager
from .template import Template, load_template, resolve

__all__ = ["Config", "StateContext", "StateManager", "Template", "load_template", "resolve"]
