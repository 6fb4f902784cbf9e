"""
Component Detector - Finds conflicting NVIDIA driver software inside a container.

Six probes run in a fixed order and stop at the first positive. Each probe
is a small shell snippet executed in the container that prints the first
piece of evidence it finds and nothing otherwise.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from common.exceptions import ContainerNotRunningError

from ..core.config_document import ConfigDocument
from ..core.pct_host import ContainerHost, ContainerStatus
from .package_manager import DRIVER_PACKAGE_PATTERN

logger = logging.getLogger(__name__)


class ConflictCategory(Enum):
    """Categories of conflicting components, in probe order."""
    PACKAGES = "packages"
    BINARIES = "binaries"
    LIBRARIES = "libraries"
    DRIVER_DIRECTORIES = "driver_directories"
    KERNEL_MODULES = "kernel_modules"
    TOOLKIT = "toolkit"


BIN_DIRS = ["/usr/bin", "/usr/sbin", "/usr/local/bin", "/usr/local/sbin", "/bin", "/sbin"]
LIB_DIRS = [
    "/usr/lib", "/usr/lib64", "/usr/lib/x86_64-linux-gnu", "/usr/local/lib",
    "/lib", "/lib64", "/lib/x86_64-linux-gnu",
]
DRIVER_DIRS = [
    "/usr/share/nvidia", "/usr/lib/nvidia", "/usr/lib64/nvidia",
    "/usr/lib/x86_64-linux-gnu/nvidia", "/etc/nvidia", "/var/lib/nvidia",
]
MODULE_DIRS = ["/lib/modules", "/usr/lib/modules"]
VENDOR_FILE_GLOBS = ["nvidia*", "libnvidia-*", "libcuda*", "libnvcuvid*", "libnvoptix*"]
VIRTUAL_FS = ["/proc", "/sys", "/dev", "/run"]

# Skips "$d" unless it is a real directory reached without any symlink
# (merged /usr: /lib -> usr/lib); bind-mount exclusions are physical paths.
REAL_DIR_GUARD = '[ -d "$d" ] && [ "$(cd "$d" && pwd -P)" = "$d" ] || continue; '


@dataclass
class ComponentScanReport:
    """Outcome of one detector pass over a container."""
    ctid: str
    conflict: bool = False
    category: Optional[ConflictCategory] = None
    evidence: Optional[str] = None
    checked: List[ConflictCategory] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflict

    def to_dict(self) -> dict:
        return {
            "ctid": self.ctid,
            "conflict": self.conflict,
            "category": self.category.value if self.category else None,
            "evidence": self.evidence,
            "checked": [c.value for c in self.checked],
        }


def _case_skip(paths: Iterable[str], var: str = "$f") -> str:
    """Shell ``case`` statement that skips the loop iteration for listed paths."""
    quoted = sorted({shlex.quote(p) for p in paths})
    if not quoted:
        return ""
    return f'case "{var}" in {"|".join(quoted)}) continue;; esac; '


def _words(items: Iterable[str]) -> str:
    return " ".join(shlex.quote(i) for i in items)


def library_stem(name: str) -> str:
    """``libnvidia-ml.so.1`` -> ``libnvidia-ml.so``"""
    head, sep, _ = name.partition(".so")
    return head + sep


def under(root: str, path: str) -> str:
    """Absolute container ``path`` inside a filesystem mounted at ``root``."""
    if root == "/":
        return path
    if path == "/":
        return root
    return posixpath.join(root, path.lstrip("/"))


class ComponentDetector:
    """
    Detects driver components that conflict with host passthrough.

    The bridge executable and library are never evidence, nor are any
    paths currently bind-mounted into the container by the managed block.

    ``root`` is where the scripts find the container filesystem: ``/`` when
    they run inside the container, the rootfs mount point otherwise.
    """

    def __init__(self, host: ContainerHost, settings, root: str = "/"):
        self.host = host
        self.settings = settings
        self.root = posixpath.normpath(root)

    def path(self, container_path: str) -> str:
        return under(self.root, container_path)

    def _paths(self, container_paths: Iterable[str]) -> str:
        return _words(self.path(p) for p in container_paths)

    def _excluded(self, excluded_paths: Iterable[str]) -> List[str]:
        return sorted({self.path(p) for p in excluded_paths} | {self.path(self.settings.bridge_binary)})

    def default_exclusions(self, ctid: str) -> List[str]:
        """Container paths bind-mounted by the current managed block."""
        try:
            document = ConfigDocument.parse(self.host.read_config(ctid), marker=self.settings.marker)
        except OSError as e:
            logger.debug(f"Cannot read config of CT {ctid}: {e}")
            return []
        return document.mounted_container_paths()

    def probe_script(self, category: ConflictCategory, excluded_paths: Sequence[str] = ()) -> str:
        """Shell snippet that prints the first evidence line for a category."""
        excluded = self._excluded(excluded_paths)
        bridge_lib = shlex.quote(library_stem(self.settings.bridge_library)) + "*"

        if category == ConflictCategory.PACKAGES:
            ignore = "".join(
                f" | grep -vxF -e {shlex.quote(p)}" for p in self.settings.remediation_packages
            )
            return (
                "{ dpkg-query -W -f='${Status} ${binary:Package}\\n' 2>/dev/null"
                " | awk '$3 == \"installed\" {print $4}' | sed 's/:.*$//';"
                " rpm -qa --qf '%{NAME}\\n' 2>/dev/null; }"
                f" | grep -E {shlex.quote(DRIVER_PACKAGE_PATTERN)}{ignore} | head -n 1"
            )

        if category == ConflictCategory.BINARIES:
            return (
                f"for d in {self._paths(BIN_DIRS)}; do "
                f"{REAL_DIR_GUARD}"
                'for f in "$d"/nvidia-*; do '
                '[ -e "$f" ] || continue; '
                f"{_case_skip(excluded)}"
                'echo "$f"; exit 0; '
                "done; done"
            )

        if category == ConflictCategory.LIBRARIES:
            return (
                f"for d in {self._paths(LIB_DIRS)}; do "
                f"{REAL_DIR_GUARD}"
                'for f in "$d"/libnvidia-*.so.* "$d"/libcuda.so.*; do '
                '[ -e "$f" ] || continue; '
                f"{_case_skip(excluded)}"
                f'case "${{f##*/}}" in {bridge_lib}) continue;; esac; '
                'echo "$f"; exit 0; '
                "done; done"
            )

        if category == ConflictCategory.DRIVER_DIRECTORIES:
            return (
                f"for f in {self._paths(DRIVER_DIRS)} {self._paths(['/usr/src'])}/nvidia-*; do "
                '[ -d "$f" ] || continue; '
                f"{_case_skip(excluded)}"
                'echo "$f"; exit 0; '
                "done"
            )

        if category == ConflictCategory.KERNEL_MODULES:
            return (
                f"for d in {self._paths(MODULE_DIRS)}; do "
                f"{REAL_DIR_GUARD}"
                "find \"$d\" -name 'nvidia*.ko*' 2>/dev/null | head -n 1 | grep . && exit 0; "
                "done; true"
            )

        if category == ConflictCategory.TOOLKIT:
            return (
                f"for f in {self._paths(['/usr/local/cuda'])} {self._paths(['/usr/local'])}/cuda-*; do "
                '[ -e "$f" ] && { echo "$f"; exit 0; }; '
                "done; command -v nvcc 2>/dev/null; true"
            )

        raise ValueError(f"Unknown category: {category}")

    def probe_scripts(self, excluded_paths: Sequence[str] = ()) -> Dict[ConflictCategory, str]:
        return {c: self.probe_script(c, excluded_paths) for c in ConflictCategory}

    def _require_running(self, ctid: str) -> None:
        status = self.host.status(ctid)
        if status != ContainerStatus.RUNNING:
            raise ContainerNotRunningError(ctid, status.value)

    def scan(self, ctid: str, excluded_paths: Optional[Sequence[str]] = None) -> ComponentScanReport:
        """
        Probe a running container for conflicting components.

        Args:
            ctid: Container ID
            excluded_paths: Container paths never counted as evidence;
                defaults to the paths bind-mounted by the managed block

        Returns:
            ComponentScanReport; conflict is False only if all six
            categories came back negative

        Raises:
            ContainerNotRunningError: The container is not running
        """
        self._require_running(ctid)
        if excluded_paths is None:
            excluded_paths = self.default_exclusions(ctid)

        report = ComponentScanReport(ctid=ctid)
        for category in ConflictCategory:
            report.checked.append(category)
            result = self.host.shell(
                ctid,
                self.probe_script(category, excluded_paths),
                timeout=self.settings.command_timeout,
            )
            if not result.ok and not result.lines:
                logger.debug(
                    f"{category.value} probe in CT {ctid} exited {result.returncode}, "
                    f"treating as negative"
                )
                continue
            if result.lines:
                report.conflict = True
                report.category = category
                report.evidence = result.lines[0]
                logger.warning(
                    f"CT {ctid}: conflicting {category.value.replace('_', ' ')} found "
                    f"({report.evidence})"
                )
                return report

        logger.info(f"CT {ctid}: no conflicting driver components")
        return report

    def raw_search_script(self) -> str:
        names = " -o ".join(f"-name {shlex.quote(g)}" for g in VENDOR_FILE_GLOBS)
        pruned = " -o ".join(f"-path {shlex.quote(self.path(p))}" for p in VIRTUAL_FS)
        return (
            f"find {shlex.quote(self.root)} -xdev \\( {pruned} \\) -prune"
            f" -o \\( {names} \\) -print 2>/dev/null; true"
        )

    def raw_file_search(self, ctid: str, excluded_paths: Optional[Sequence[str]] = None) -> List[str]:
        """
        Every vendor-named file path in the container.

        Bind-mount targets, the bridge executable and files of the bridge
        library are left out.
        """
        if excluded_paths is None:
            excluded_paths = self.default_exclusions(ctid)
        excluded = set(self._excluded(excluded_paths))
        bridge_lib = library_stem(self.settings.bridge_library)

        result = self.host.shell(ctid, self.raw_search_script(), timeout=self.settings.command_timeout)
        found = []
        for path in result.lines:
            if path in excluded or os.path.basename(path).startswith(bridge_lib):
                continue
            found.append(path)
        return found
