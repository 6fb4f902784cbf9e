"""
lxc-gpu-passthrough Utility Modules

File operations used when mutating container configuration.
"""

from .atomic_write import (
    atomic_write_text,
    timestamped_backup,
)

__all__ = [
    "atomic_write_text",
    "timestamped_backup",
]
