"""
lxc-gpu-passthrough

NVIDIA GPU passthrough from a Proxmox VE host into LXC containers.
"""

__version__ = "0.1.0"

from .core.orchestrator import BatchOrchestrator, Operation
from .core.pct_host import PctHost
from .core.settings import PassthroughSettings, load_settings

__all__ = [
    "BatchOrchestrator",
    "Operation",
    "PctHost",
    "PassthroughSettings",
    "load_settings",
]
