"""
Managed Block Template Loader

Loads the Jinja2 templates that render the passthrough block, searching
multiple paths so administrators can override the packaged template.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, List

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.exceptions import TemplateError as JinjaTemplateError

from common.exceptions import TemplateNotFoundError, TemplateRenderError

logger = logging.getLogger(__name__)

BLOCK_TEMPLATE = "passthrough-block.conf.j2"


class TemplateLoader:
    """
    Loads passthrough templates from multiple locations.

    Search order:
    1. Administrator overrides (/etc/lxc-gpu-passthrough/templates)
    2. Packaged templates directory
    """

    TEMPLATE_PATHS = [
        Path("/etc/lxc-gpu-passthrough/templates"),
        Path(__file__).parent,
    ]

    def __init__(self, additional_paths: Optional[List[Path]] = None):
        self._paths = list(additional_paths or []) + list(self.TEMPLATE_PATHS)
        self._env = self._create_environment()

    def _create_environment(self) -> Environment:
        """Create Jinja2 environment with all template paths."""
        loaders = []

        for path in self._paths:
            if path.exists() and path.is_dir():
                loaders.append(FileSystemLoader(str(path)))
                logger.debug(f"Added template path: {path}")

        return Environment(
            loader=ChoiceLoader(loaders),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
            undefined=StrictUndefined,
        )

    def render(self, name: str, **variables) -> str:
        """
        Render a template with variables.

        Args:
            name: Template filename
            **variables: Template variables

        Returns:
            Rendered text

        Raises:
            TemplateNotFoundError: No search path holds the template
            TemplateRenderError: The template failed to render
        """
        try:
            template = self._env.get_template(name)
        except TemplateNotFound:
            raise TemplateNotFoundError(name)

        try:
            return template.render(**variables)
        except JinjaTemplateError as e:
            raise TemplateRenderError(name, str(e)) from e


_loader: Optional[TemplateLoader] = None


def get_template_loader() -> TemplateLoader:
    """Get the global template loader."""
    global _loader
    if _loader is None:
        _loader = TemplateLoader()
    return _loader
