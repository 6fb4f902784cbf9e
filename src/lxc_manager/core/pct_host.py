"""
Container Host - Access to LXC containers through the Proxmox ``pct`` CLI.

ContainerHost is the seam every engine component talks to; PctHost is the
production implementation. Container status is always queried live.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from common.exceptions import (
    CommandError, ContainerNotFoundError, ContainerStartError, ContainerStopError,
)
from utils.atomic_write import atomic_write_text

logger = logging.getLogger(__name__)


class ContainerStatus(Enum):
    """Container run state as reported by pct."""
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, text: str) -> "ContainerStatus":
        text = text.strip().lower()
        for status in cls:
            if status.value in text:
                return status
        return cls.UNKNOWN


@dataclass
class CommandResult:
    """Outcome of a command run on the host or inside a container."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def lines(self) -> List[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


@dataclass
class ContainerRecord:
    """A container known to the host."""
    ctid: str
    name: str
    status: ContainerStatus
    config_path: Path

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING


class ContainerHost(ABC):
    """Abstract interface to the container-management collaborator."""

    @abstractmethod
    def list_containers(self) -> List[ContainerRecord]:
        """List all containers with their current status."""

    @abstractmethod
    def exists(self, ctid: str) -> bool:
        """Check if container exists."""

    @abstractmethod
    def status(self, ctid: str) -> ContainerStatus:
        """Query the live run state of a container."""

    @abstractmethod
    def config_path(self, ctid: str) -> Path:
        """Path of the container's persisted configuration document."""

    @abstractmethod
    def start(self, ctid: str) -> None:
        """Start a container. Raises ContainerStartError on failure."""

    @abstractmethod
    def stop(self, ctid: str) -> None:
        """Stop a container. Raises ContainerStopError on failure."""

    @abstractmethod
    def exec(self, ctid: str, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a command inside a running container."""

    def is_running(self, ctid: str) -> bool:
        return self.status(ctid) == ContainerStatus.RUNNING

    def read_config(self, ctid: str) -> str:
        """Read the configuration document text."""
        path = self.config_path(ctid)
        if not path.exists():
            raise ContainerNotFoundError(ctid)
        return path.read_text()

    def write_config(self, ctid: str, text: str) -> None:
        """Replace the configuration document atomically."""
        atomic_write_text(self.config_path(ctid), text)

    def shell(self, ctid: str, script: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a POSIX shell snippet inside a container."""
        return self.exec(ctid, ["sh", "-c", script], timeout=timeout)


class PctHost(ContainerHost):
    """ContainerHost backed by the Proxmox ``pct`` command."""

    PCT = "pct"

    def __init__(self, settings):
        self.config_dir = Path(settings.lxc_config_dir)
        self.command_timeout = settings.command_timeout

    def _run(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        cmd = [self.PCT] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {e.timeout}s: {' '.join(cmd)}")
            return CommandResult(returncode=124, stdout=_as_text(e.stdout),
                                 stderr=_as_text(e.stderr), timed_out=True)
        except FileNotFoundError as e:
            raise CommandError(cmd, "pct not found (is this a Proxmox host?)", cause=e)

        return CommandResult(result.returncode, result.stdout, result.stderr)

    def list_containers(self) -> List[ContainerRecord]:
        result = self._run(["list"])
        if not result.ok:
            raise CommandError([self.PCT, "list"], result.stderr.strip() or "non-zero exit")

        records = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if not parts or not parts[0].isdigit():
                continue  # header
            ctid = parts[0]
            name = parts[-1] if len(parts) > 2 else "N/A"
            records.append(ContainerRecord(
                ctid=ctid,
                name=name,
                status=ContainerStatus.parse(parts[1]) if len(parts) > 1 else ContainerStatus.UNKNOWN,
                config_path=self.config_path(ctid),
            ))
        return records

    def exists(self, ctid: str) -> bool:
        return self.config_path(ctid).exists()

    def status(self, ctid: str) -> ContainerStatus:
        result = self._run(["status", ctid])
        if not result.ok:
            logger.debug(f"pct status {ctid} failed: {result.stderr.strip()}")
            return ContainerStatus.UNKNOWN
        return ContainerStatus.parse(result.stdout)

    def config_path(self, ctid: str) -> Path:
        return self.config_dir / f"{ctid}.conf"

    def start(self, ctid: str) -> None:
        result = self._run(["start", ctid])
        if not result.ok:
            raise ContainerStartError(ctid, result.stderr.strip() or f"exit {result.returncode}")
        logger.info(f"Started container {ctid}")

    def stop(self, ctid: str) -> None:
        result = self._run(["stop", ctid])
        if not result.ok:
            raise ContainerStopError(ctid, result.stderr.strip() or f"exit {result.returncode}")
        logger.info(f"Stopped container {ctid}")

    def exec(self, ctid: str, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        return self._run(["exec", ctid, "--"] + list(argv), timeout=timeout)


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


def ensure_running(host: ContainerHost, ctid: str) -> bool:
    """
    Start a container if it is not running.

    Returns:
        True if the container had to be started.
    """
    if host.is_running(ctid):
        return False
    host.start(ctid)
    return True


def restart(host: ContainerHost, ctid: str) -> None:
    """Stop the container if running, then start it."""
    if host.is_running(ctid):
        host.stop(ctid)
    host.start(ctid)
