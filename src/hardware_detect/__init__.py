"""lxc-gpu-passthrough Hardware Detection Module.

This module provides detection of:
- NVIDIA device nodes on the host and their major numbers
- Host GPU name and driver version
- NVIDIA user-space libraries and their real files behind symlinks
"""

from .device_inventory import (
    HostDevice,
    HostDeviceInventory,
    HostGPUInfo,
    scan_host_devices,
    require_inventory,
    query_host_gpu,
    nvidia_majors,
)
from .library_resolver import LibraryResolver, LibraryMapping

__all__ = [
    # Device inventory
    "HostDevice",
    "HostDeviceInventory",
    "HostGPUInfo",
    "scan_host_devices",
    "require_inventory",
    "query_host_gpu",
    "nvidia_majors",
    # Library resolution
    "LibraryResolver",
    "LibraryMapping",
]

__version__ = "0.1.0"
