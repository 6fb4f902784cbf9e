"""
Passthrough Settings - Dataclass holding every path, name and timeout the
engine uses, loadable from a JSON file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import List, Optional

from common.exceptions import InvalidConfigError, MissingConfigError
from .config_document import DEFAULT_MARKER, is_vendor_source

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path("/etc/lxc-gpu-passthrough/settings.json")
SETTINGS_ENV_VAR = "LXC_GPU_SETTINGS"


@dataclass
class PassthroughSettings:
    """Settings for host inventory, configuration rewriting and verification."""

    # Proxmox locations
    lxc_config_dir: Path = Path("/etc/pve/lxc")
    backup_dir: Path = Path("/var/backups/lxc-gpu-passthrough")
    proxmox_marker: Path = Path("/etc/pve/.version")

    # Host device nodes
    device_paths: List[str] = field(default_factory=lambda: [
        "/dev/nvidia0",
        "/dev/nvidiactl",
        "/dev/nvidia-modeset",
        "/dev/nvidia-uvm",
        "/dev/nvidia-uvm-tools",
    ])
    capability_dir: Path = Path("/dev/nvidia-caps")
    primary_device: str = "/dev/nvidia0"
    device_mode: str = "0666"
    proc_devices: Path = Path("/proc/devices")

    # Libraries bound into the container
    host_library_dir: Path = Path("/usr/lib/x86_64-linux-gnu")
    container_library_dir: Path = Path("/usr/lib/x86_64-linux-gnu")
    required_libraries: List[str] = field(default_factory=lambda: [
        "libnvidia-ml.so.1",
        "libcuda.so.1",
        "libnvidia-ptxjitcompiler.so.1",
    ])
    bridge_binary: str = "/usr/bin/nvidia-smi"
    bridge_library: str = "libnvidia-ml.so.1"

    # Managed block
    marker: str = DEFAULT_MARKER
    cgroup_key: str = "lxc.cgroup2.devices.allow"

    # Verification
    probe_command: List[str] = field(default_factory=lambda: ["nvidia-smi"])
    probe_timeout: float = 10.0
    device_wait_timeout: float = 10.0
    device_poll_interval: float = 1.0
    remediation_packages: List[str] = field(default_factory=lambda: ["libnvidia-ml1"])

    # Safety timeout for every other pct call
    command_timeout: float = 300.0

    def __post_init__(self):
        for f in fields(self):
            if f.type in ("Path", Path) and isinstance(getattr(self, f.name), str):
                setattr(self, f.name, Path(getattr(self, f.name)))

    def validate(self) -> List[str]:
        """Validate settings and return list of errors."""
        errors = []

        if not self.device_paths:
            errors.append("At least one device path is required")
        if self.primary_device not in self.device_paths:
            errors.append(f"Primary device {self.primary_device} is not in device_paths")
        if not self.marker.startswith("#"):
            errors.append("Marker must be a comment line starting with '#'")
        try:
            int(self.device_mode, 8)
        except ValueError:
            errors.append(f"Device mode {self.device_mode!r} is not an octal number")
        if not self.cgroup_key.startswith("lxc.cgroup"):
            errors.append(f"Unexpected cgroup key: {self.cgroup_key}")
        if not self.probe_command:
            errors.append("Probe command must not be empty")
        if self.probe_timeout <= 0:
            errors.append("Probe timeout must be positive")
        if self.device_wait_timeout < 0:
            errors.append("Device wait timeout must not be negative")
        if self.device_poll_interval <= 0:
            errors.append("Device poll interval must be positive")
        if not self.container_library_dir.is_absolute():
            errors.append("Container library dir must be an absolute path")
        if not self.bridge_binary.startswith("/"):
            errors.append("Bridge binary must be an absolute path")
        for name in [self.bridge_binary] + list(self.required_libraries):
            if not is_vendor_source(name):
                errors.append(f"{name} is not an NVIDIA artifact and cannot be managed")

        return errors

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
        return data


def load_settings(path: Optional[Path] = None) -> PassthroughSettings:
    """
    Load settings from a JSON file.

    Resolution order: explicit path, the LXC_GPU_SETTINGS environment
    variable, then /etc/lxc-gpu-passthrough/settings.json. A missing
    default file yields the built-in defaults; a missing explicit file
    is an error.

    Raises:
        MissingConfigError: An explicitly requested file does not exist
        InvalidConfigError: Unreadable JSON, unknown keys or invalid values
    """
    explicit = path is not None or SETTINGS_ENV_VAR in os.environ
    if path is None:
        path = Path(os.environ.get(SETTINGS_ENV_VAR, DEFAULT_SETTINGS_PATH))
    path = Path(path)

    if not path.exists():
        if explicit:
            raise MissingConfigError(f"settings file {path}")
        logger.debug(f"No settings file at {path}, using defaults")
        return PassthroughSettings()

    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfigError("settings", str(path), str(e)) from e

    if not isinstance(data, dict):
        raise InvalidConfigError("settings", str(path), "top level must be an object")

    known = {f.name for f in fields(PassthroughSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InvalidConfigError(unknown[0], data[unknown[0]], "unknown setting")

    settings = PassthroughSettings(**data)
    errors = settings.validate()
    if errors:
        raise InvalidConfigError("settings", str(path), "; ".join(errors))

    logger.debug(f"Loaded settings from {path}")
    return settings
