"""
Decorators shared across lxc-gpu-passthrough: privilege checks for
commands that drive pct, and timing of the slow engine stages.
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Callable

logger = logging.getLogger(__name__)


def require_root(func: Callable) -> Callable:
    """
    Decorator that requires root privileges.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if os.geteuid() != 0:
            raise PermissionError(
                f"{func.__name__} needs root: pct and /etc/pve are only usable by root. Run with sudo."
            )
        return func(*args, **kwargs)
    return wrapper


def timed(func: Callable) -> Callable:
    """
    Decorator to log function execution time.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - start
            logger.debug(f"{func.__name__} completed in {elapsed:.3f}s")
    return wrapper
