#!/usr/bin/env python3
"""
lxc-gpu-passthrough Hardware Detection - Host Device Inventory

Enumerates the NVIDIA device nodes present on the host and the character
device major numbers that cgroup rules must allow.
"""

import logging
import os
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from common.exceptions import EmptyInventoryError

logger = logging.getLogger(__name__)

# Major number the nvidia driver registers for nvidia[0-9]+, nvidiactl
# and nvidia-modeset
NVIDIA_CORE_MAJOR = 195

# /proc/devices names for the dynamically allocated majors
PROC_DEVICE_NAMES = {
    "nvidia-uvm": "nvidia-uvm",
    "nvidia-uvm-tools": "nvidia-uvm",
    "nvidia-caps": "nvidia-caps",
}


@dataclass(frozen=True)
class HostDevice:
    """A device node that exists on the host."""

    path: str           # e.g., "/dev/nvidia0"
    major: int          # e.g., 195
    optional: bool = False

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class HostDeviceInventory:
    """Ordered set of device nodes found on the host."""

    devices: Tuple[HostDevice, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.devices

    @property
    def paths(self) -> List[str]:
        return [d.path for d in self.devices]

    @property
    def majors(self) -> List[int]:
        """Distinct major numbers, ascending."""
        return sorted({d.major for d in self.devices})

    def has(self, path: str) -> bool:
        return any(d.path == path for d in self.devices)

    def __len__(self) -> int:
        return len(self.devices)

    def __iter__(self):
        return iter(self.devices)


@dataclass
class HostGPUInfo:
    """GPU name and driver version as reported by nvidia-smi on the host."""

    name: str
    driver_version: str


def _read_proc_devices(proc_devices: Path) -> Dict[str, int]:
    """Parse the character device section of /proc/devices."""
    majors: Dict[str, int] = {}
    try:
        lines = proc_devices.read_text().splitlines()
    except (IOError, PermissionError):
        return majors

    in_char = False
    for line in lines:
        line = line.strip()
        if line.startswith("Character devices"):
            in_char = True
            continue
        if line.startswith("Block devices"):
            break
        if not in_char or not line:
            continue
        parts = line.split(None, 1)
        if len(parts) == 2 and parts[0].isdigit():
            majors.setdefault(parts[1], int(parts[0]))
    return majors


def _device_major(path: Path, proc_majors: Dict[str, int]) -> int:
    """Major number of a device node, falling back to /proc/devices."""
    try:
        st = path.stat()
        if stat.S_ISCHR(st.st_mode):
            return os.major(st.st_rdev)
    except OSError:
        pass

    name = path.name
    if path.parent.name == "nvidia-caps":
        name = "nvidia-caps"
    proc_name = PROC_DEVICE_NAMES.get(name)
    if proc_name and proc_name in proc_majors:
        return proc_majors[proc_name]
    return NVIDIA_CORE_MAJOR


def nvidia_majors(settings) -> List[int]:
    """Character majors the NVIDIA drivers registered, the core major included."""
    majors = {NVIDIA_CORE_MAJOR}
    for name, major in _read_proc_devices(Path(settings.proc_devices)).items():
        if name.startswith("nvidia"):
            majors.add(major)
    return sorted(majors)


def scan_host_devices(settings) -> HostDeviceInventory:
    """
    Return the subset of well-known device nodes present on the host.

    Checks ``settings.device_paths`` in order, then every entry of
    ``settings.capability_dir`` (sorted). An empty result is logged as an
    error; use require_inventory() to turn it into a failure.
    """
    proc_majors = _read_proc_devices(Path(settings.proc_devices))
    devices: List[HostDevice] = []

    for raw in settings.device_paths:
        path = Path(raw)
        if path.exists():
            devices.append(HostDevice(
                path=str(path),
                major=_device_major(path, proc_majors),
                optional=str(path) != settings.primary_device,
            ))
        else:
            logger.debug(f"Device node not present: {path}")

    caps_dir = Path(settings.capability_dir)
    if caps_dir.is_dir():
        for cap in sorted(caps_dir.iterdir()):
            devices.append(HostDevice(
                path=str(cap),
                major=_device_major(cap, proc_majors),
                optional=True,
            ))

    inventory = HostDeviceInventory(tuple(devices))
    if inventory.is_empty:
        logger.error("No NVIDIA device nodes found on the host")
    else:
        logger.info(f"Host devices: {', '.join(inventory.paths)}")
    return inventory


def require_inventory(inventory: HostDeviceInventory, checked: Optional[Iterable[str]] = None) -> HostDeviceInventory:
    """Raise EmptyInventoryError if no device nodes were found."""
    if inventory.is_empty:
        raise EmptyInventoryError(list(checked or []))
    return inventory


def query_host_gpu(timeout: float = 10) -> Optional[HostGPUInfo]:
    """Ask nvidia-smi on the host for the first GPU's name and driver version."""
    try:
        result = subprocess.run(
            ["nvidia-smi", "--query-gpu=name,driver_version", "--format=csv,noheader"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning(f"nvidia-smi unavailable on host: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"nvidia-smi failed on host: {result.stderr.strip()}")
        return None

    first = result.stdout.strip().splitlines()[:1]
    if not first:
        return None
    parts = [p.strip() for p in first[0].split(",")]
    if len(parts) < 2:
        return HostGPUInfo(name=parts[0], driver_version="unknown")
    return HostGPUInfo(name=parts[0], driver_version=parts[1])
