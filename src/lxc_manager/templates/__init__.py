"""
Templates for the managed passthrough block.
"""

from .loader import TemplateLoader, get_template_loader, BLOCK_TEMPLATE

__all__ = ["TemplateLoader", "get_template_loader", "BLOCK_TEMPLATE"]
