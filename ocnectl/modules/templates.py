"""Render the Jinja2 templates shipped in ocnectl/templates.

Templates cover libvirt XML documents, kubeadm configuration, kubeconfig
files and the shell scripts run on nodes. Rendering is strict: an
undefined variable is an error rather than an empty string.
"""
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

logger = logging.getLogger("ocnectl.templates")

_env = None


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'templates')


def get_environment() -> Environment:
    global _env
    if _env is None:
        _env = Environment(
            loader=FileSystemLoader(get_template_path()),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )
    return _env


def render(name: str, **context: Any) -> str:
    """Render a template by its path relative to the templates directory.

    Raises:
        ConfigurationError: If the template is missing, broken, or uses an undefined variable
    """
    try:
        template = get_environment().get_template(name)
        return template.render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"Template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Template syntax error in {name} at line {e.lineno}: {e.message}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Undefined variable in template {name}: {e}") from e


def read_template(name: str) -> str:
    """Read a template verbatim, for files that are shipped without rendering.

    Raises:
        ConfigurationError: If the file does not exist
    """
    path = os.path.join(get_template_path(), name)
    try:
        with open(path, 'r') as f:
            return f.read()
    except FileNotFoundError as e:
        raise ConfigurationError(f"Template not found: {name}") from e
