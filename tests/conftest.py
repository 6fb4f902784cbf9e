"""
Pytest configuration and shared fixtures for lxc-gpu-passthrough tests.

Provides an in-memory container host and settings rooted in tmp_path.
"""

import logging
import pytest
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.exceptions import ContainerStartError, ContainerStopError
from hardware_detect.device_inventory import HostDevice, HostDeviceInventory
from lxc_manager.core.pct_host import CommandResult, ContainerHost, ContainerRecord, ContainerStatus
from lxc_manager.core.settings import PassthroughSettings
from lxc_manager.passthrough.component_detector import ConflictCategory
from lxc_manager.passthrough.package_manager import DETECT_SCRIPT


# ============ Fake Container Host ============

def probe_category(script: str) -> Optional[ConflictCategory]:
    """Identify which detector probe a shell snippet is."""
    if script.startswith("{ dpkg-query"):
        return ConflictCategory.PACKAGES
    if 'echo "$f"; exit 0' in script:
        if '"$d"/nvidia-*' in script:
            return ConflictCategory.BINARIES
        if '"$d"/libnvidia-*' in script:
            return ConflictCategory.LIBRARIES
        if "/usr/src/nvidia-*" in script:
            return ConflictCategory.DRIVER_DIRECTORIES
    if "-name 'nvidia*.ko*'" in script:
        return ConflictCategory.KERNEL_MODULES
    if "command -v nvcc" in script:
        return ConflictCategory.TOOLKIT
    return None


@dataclass
class FakeContainer:
    """State of one simulated container."""
    ctid: str
    status: ContainerStatus = ContainerStatus.STOPPED
    name: str = "ct"
    package_manager: Optional[str] = "apt-get"
    packages: List[str] = field(default_factory=list)
    evidence: Dict[ConflictCategory, str] = field(default_factory=dict)
    residual: List[str] = field(default_factory=list)
    device_visible: bool = True
    probe_ok: bool = True
    probe_ok_after_remediation: bool = True
    probe_times_out: bool = False
    remediated: bool = False


class FakeHost(ContainerHost):
    """
    In-memory ContainerHost.

    Configuration documents live under ``config_dir``; everything else is
    simulated per container. ``fail_on`` injects a failing result for any
    exec whose joined argv contains the given text.
    """

    def __init__(self, config_dir: Path):
        self.config_dir = config_dir
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.containers: Dict[str, FakeContainer] = {}
        self.calls: List[tuple] = []
        self.start_failures: Set[str] = set()
        self.stop_failures: Set[str] = set()
        self.overrides: List[tuple] = []

    def add_container(self, ctid: str, config_text: str = "", **state) -> FakeContainer:
        container = FakeContainer(ctid=ctid, **state)
        self.containers[ctid] = container
        self.config_path(ctid).write_text(config_text)
        return container

    def fail_on(self, needle: str, result: Optional[CommandResult] = None) -> None:
        self.overrides.insert(0, (needle, result or CommandResult(1, stderr="injected failure")))

    def execs(self, ctid: Optional[str] = None) -> List[List[str]]:
        return [c[2] for c in self.calls if c[0] == "exec" and (ctid is None or c[1] == ctid)]

    def lifecycle(self, ctid: str) -> List[str]:
        return [c[0] for c in self.calls if c[0] in ("start", "stop") and c[1] == ctid]

    # ContainerHost interface

    def list_containers(self) -> List[ContainerRecord]:
        return [
            ContainerRecord(c.ctid, c.name, c.status, self.config_path(c.ctid))
            for c in self.containers.values()
        ]

    def exists(self, ctid: str) -> bool:
        return self.config_path(ctid).exists()

    def status(self, ctid: str) -> ContainerStatus:
        container = self.containers.get(ctid)
        return container.status if container else ContainerStatus.UNKNOWN

    def config_path(self, ctid: str) -> Path:
        return self.config_dir / f"{ctid}.conf"

    def start(self, ctid: str) -> None:
        self.calls.append(("start", ctid))
        if ctid in self.start_failures:
            raise ContainerStartError(ctid, "simulated start failure")
        self.containers[ctid].status = ContainerStatus.RUNNING

    def stop(self, ctid: str) -> None:
        self.calls.append(("stop", ctid))
        if ctid in self.stop_failures:
            raise ContainerStopError(ctid, "simulated stop failure")
        self.containers[ctid].status = ContainerStatus.STOPPED

    def exec(self, ctid, argv, timeout=None) -> CommandResult:
        argv = list(argv)
        self.calls.append(("exec", ctid, argv, timeout))
        container = self.containers[ctid]
        if container.status != ContainerStatus.RUNNING:
            return CommandResult(1, stderr=f"CT {ctid} not running")

        joined = " ".join(argv)
        for needle, result in self.overrides:
            if needle in joined:
                return result

        if argv[:2] == ["sh", "-c"]:
            return self._shell(container, argv[2])
        return self._command(container, argv)

    def _shell(self, container: FakeContainer, script: str) -> CommandResult:
        category = probe_category(script)
        if category is not None:
            evidence = container.evidence.get(category)
            return CommandResult(0, stdout=f"{evidence}\n" if evidence else "")
        if script == DETECT_SCRIPT:
            if container.package_manager:
                return CommandResult(0, stdout=f"/usr/bin/{container.package_manager}\n")
            return CommandResult(1)
        if script.startswith("test -e "):
            return CommandResult(0 if container.device_visible else 1)
        if script.startswith("find / -xdev"):
            return CommandResult(0, stdout="".join(f"{p}\n" for p in container.residual))
        if script.startswith("dpkg-query"):
            return CommandResult(0, stdout="".join(f"{p}\n" for p in container.packages))
        if script.startswith("rm -rf /usr/local/cuda"):
            for category in list(container.evidence):
                if category != ConflictCategory.PACKAGES:
                    del container.evidence[category]
        return CommandResult(0)

    def _command(self, container: FakeContainer, argv: List[str]) -> CommandResult:
        if "purge" in argv or argv[:2] in (["dnf", "remove"], ["yum", "remove"]):
            container.packages = [p for p in container.packages if p not in argv]
            container.evidence.pop(ConflictCategory.PACKAGES, None)
            return CommandResult(0)
        if "install" in argv:
            container.remediated = True
            return CommandResult(0)
        if argv[:1] == ["rpm"]:
            return CommandResult(0, stdout="".join(f"{p}\n" for p in container.packages))
        if argv[:1] == ["nvidia-smi"]:
            if container.probe_times_out:
                return CommandResult(124, timed_out=True)
            ok = container.probe_ok or (container.remediated and container.probe_ok_after_remediation)
            return CommandResult(0 if ok else 9, stderr="" if ok else "Failed to initialize NVML")
        return CommandResult(0)


@pytest.fixture
def fake_host(tmp_path: Path) -> FakeHost:
    """Empty in-memory host with configs under tmp_path."""
    return FakeHost(tmp_path / "lxc")


# ============ Settings Fixtures ============

@pytest.fixture
def host_libs(tmp_path: Path) -> Path:
    """Host library directory with versioned files behind .so.1 links."""
    lib_dir = tmp_path / "hostlib"
    lib_dir.mkdir()
    for name, real in [
        ("libnvidia-ml.so.1", "libnvidia-ml.so.535.104.05"),
        ("libcuda.so.1", "libcuda.so.535.104.05"),
        ("libnvidia-ptxjitcompiler.so.1", "libnvidia-ptxjitcompiler.so.535.104.05"),
    ]:
        (lib_dir / real).write_bytes(b"\x7fELF")
        (lib_dir / name).symlink_to(real)
    return lib_dir


@pytest.fixture
def settings(tmp_path: Path, host_libs: Path) -> PassthroughSettings:
    """Settings with every writable location under tmp_path."""
    marker = tmp_path / "pve" / ".version"
    marker.parent.mkdir()
    marker.write_text("8.1\n")
    return PassthroughSettings(
        lxc_config_dir=tmp_path / "lxc",
        backup_dir=tmp_path / "backups",
        proxmox_marker=marker,
        host_library_dir=host_libs,
        device_wait_timeout=0.0,
        device_poll_interval=0.01,
    )


@pytest.fixture
def inventory() -> HostDeviceInventory:
    """A typical single-GPU inventory."""
    return HostDeviceInventory((
        HostDevice("/dev/nvidia0", 195),
        HostDevice("/dev/nvidiactl", 195, optional=True),
        HostDevice("/dev/nvidia-modeset", 195, optional=True),
        HostDevice("/dev/nvidia-uvm", 508, optional=True),
        HostDevice("/dev/nvidia-uvm-tools", 508, optional=True),
        HostDevice("/dev/nvidia-caps/nvidia-cap1", 237, optional=True),
        HostDevice("/dev/nvidia-caps/nvidia-cap2", 237, optional=True),
    ))


@pytest.fixture
def base_config() -> str:
    """A container config with a snapshot section."""
    return (
        "arch: amd64\n"
        "cores: 4\n"
        "hostname: ml-box\n"
        "memory: 8192\n"
        "net0: name=eth0,bridge=vmbr0,ip=dhcp,type=veth\n"
        "ostype: ubuntu\n"
        "rootfs: local-lvm:vm-101-disk-0,size=32G\n"
        "dev0: /dev/dri/renderD128,gid=104\n"
        "lxc.mount.entry: /srv/models srv/models none bind,create=dir\n"
        "unprivileged: 1\n"
        "\n"
        "[before-gpu]\n"
        "arch: amd64\n"
        "hostname: ml-box\n"
        "lxc.cgroup2.devices.allow: c 195:* rwm\n"
        "snaptime: 1700000000\n"
    )


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging() replaces the root handlers; put them back."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def as_root():
    """Pretend to be root for commands guarded by require_root."""
    from unittest.mock import patch
    with patch("os.geteuid", return_value=0):
        yield


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: end-to-end batch runs against the fake host"
    )
