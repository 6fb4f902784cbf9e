"""
Package Manager - Runs the container's own package manager through the host.

Supports apt-get (Debian/Ubuntu) and dnf/yum (Fedora/RHEL family).
Output is only ever split on lines; no package-manager specific parsing.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Pattern

from ..core.pct_host import CommandResult, ContainerHost

logger = logging.getLogger(__name__)

# Driver, compute and kernel-module packages
DRIVER_PACKAGE_PATTERN = (
    r"^(nvidia|libnvidia|libcuda|libnvcuvid|libnvoptix|cuda|"
    r"xserver-xorg-video-nvidia|kmod-nvidia|akmod-nvidia|xorg-x11-drv-nvidia)"
)
DRIVER_PACKAGE_RE = re.compile(DRIVER_PACKAGE_PATTERN)


class PackageManager(ABC):
    """Base class for in-container package managers."""

    name = ""

    def __init__(self, host: ContainerHost, ctid: str, timeout: Optional[float] = None):
        self.host = host
        self.ctid = ctid
        self.timeout = timeout

    @abstractmethod
    def list_installed_argv(self) -> List[str]:
        """Command printing one installed package name per line."""
        pass

    @abstractmethod
    def purge_argv(self, packages: List[str]) -> List[str]:
        pass

    @abstractmethod
    def install_argv(self, packages: List[str]) -> List[str]:
        pass

    @abstractmethod
    def autoremove_argv(self) -> List[str]:
        pass

    def _exec(self, argv: List[str]) -> CommandResult:
        result = self.host.exec(self.ctid, argv, timeout=self.timeout)
        if not result.ok:
            logger.debug(f"{argv[0]} failed in CT {self.ctid}: {result.stderr.strip()}")
        return result

    def list_matching(
        self,
        pattern: Pattern = DRIVER_PACKAGE_RE,
        exclude: Iterable[str] = (),
    ) -> List[str]:
        """Installed packages whose name matches the pattern."""
        result = self._exec(self.list_installed_argv())
        if not result.ok:
            return []
        excluded = set(exclude)
        return sorted({
            name for name in result.lines
            if pattern.search(name) and name not in excluded
        })

    def purge(self, packages: List[str]) -> CommandResult:
        """Remove packages including their configuration."""
        if not packages:
            return CommandResult(0)
        logger.info(f"Purging {len(packages)} package(s) in CT {self.ctid}")
        return self._exec(self.purge_argv(packages))

    def install(self, packages: List[str]) -> CommandResult:
        logger.info(f"Installing {' '.join(packages)} in CT {self.ctid}")
        return self._exec(self.install_argv(packages))

    def autoremove(self) -> CommandResult:
        """Remove dependencies nothing needs any more."""
        return self._exec(self.autoremove_argv())


class AptPackageManager(PackageManager):
    """apt-get / dpkg."""

    name = "apt-get"

    def list_installed_argv(self) -> List[str]:
        return [
            "sh", "-c",
            "dpkg-query -W -f='${Status} ${binary:Package}\\n' 2>/dev/null"
            " | awk '$3 == \"installed\" {print $4}' | sed 's/:.*$//'",
        ]

    def purge_argv(self, packages: List[str]) -> List[str]:
        return ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "purge", "-y"] + packages

    def install_argv(self, packages: List[str]) -> List[str]:
        return ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y",
                "--no-install-recommends"] + packages

    def autoremove_argv(self) -> List[str]:
        return ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "autoremove", "-y", "--purge"]

    def install(self, packages: List[str]) -> CommandResult:
        update = self._exec(["apt-get", "update", "-qq"])
        if not update.ok:
            logger.warning(f"apt-get update failed in CT {self.ctid}, installing from cached lists")
        return super().install(packages)


class DnfPackageManager(PackageManager):
    """dnf / rpm."""

    name = "dnf"

    def list_installed_argv(self) -> List[str]:
        return ["rpm", "-qa", "--qf", "%{NAME}\\n"]

    def purge_argv(self, packages: List[str]) -> List[str]:
        return [self.name, "remove", "-y"] + packages

    def install_argv(self, packages: List[str]) -> List[str]:
        return [self.name, "install", "-y"] + packages

    def autoremove_argv(self) -> List[str]:
        return [self.name, "autoremove", "-y"]


class YumPackageManager(DnfPackageManager):
    """yum / rpm."""

    name = "yum"


_MANAGERS = {
    "apt-get": AptPackageManager,
    "dnf": DnfPackageManager,
    "yum": YumPackageManager,
}

DETECT_SCRIPT = "command -v apt-get || command -v dnf || command -v yum"


def detect_package_manager(
    host: ContainerHost,
    ctid: str,
    timeout: Optional[float] = None,
) -> Optional[PackageManager]:
    """
    Find the package manager available inside a running container.

    Returns:
        A PackageManager bound to the container, or None if none is supported.
    """
    result = host.shell(ctid, DETECT_SCRIPT, timeout=timeout)
    for line in result.lines:
        cls = _MANAGERS.get(line.rsplit("/", 1)[-1])
        if cls:
            logger.debug(f"CT {ctid} uses {cls.name}")
            return cls(host, ctid, timeout=timeout)

    logger.warning(f"No supported package manager found in CT {ctid}")
    return None
