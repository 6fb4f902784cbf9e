"""
Cleanup Engine - Removes conflicting driver components from a container.

The pass is a fixed sequence of best-effort steps. A failing step is
recorded and the pass carries on; only a container that cannot be started
makes the whole pass unsuccessful.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from common.decorators import timed
from common.exceptions import CleanupResidual, ContainerLifecycleFailure
from common.logging_config import log_success

from ..core.pct_host import ContainerHost, ensure_running
from .component_detector import (
    BIN_DIRS, REAL_DIR_GUARD, ComponentDetector, ComponentScanReport, VENDOR_FILE_GLOBS, library_stem,
)
from .package_manager import PackageManager, detect_package_manager

logger = logging.getLogger(__name__)

SERVICES = ["nvidia-persistenced", "nvidia-fabricmanager", "nvidia-powerd"]
PROCESSES = ["nvidia-persistenced", "nvidia-smi", "nvidia-settings", "nv-fabricmanager"]
REPOSITORY_GLOBS = [
    "/etc/apt/sources.list.d/*nvidia*",
    "/etc/apt/sources.list.d/*cuda*",
    "/etc/yum.repos.d/*nvidia*",
    "/etc/yum.repos.d/*cuda*",
]
FILE_PREFIXES = ["/usr", "/etc", "/opt", "/var/lib"]
MODULE_PREFIXES = ["/lib/modules", "/usr/lib/modules"]

RESIDUAL_SAMPLE = 5


@dataclass
class StepOutcome:
    """Result of one cleanup step."""
    name: str
    ok: bool
    detail: str = ""


@dataclass
class CleanupResult:
    """Result of a cleanup pass."""
    ctid: str
    success: bool = True
    skipped: bool = False
    steps: List[StepOutcome] = field(default_factory=list)
    residual_count: int = 0
    residual: Optional[CleanupResidual] = None

    @property
    def failed_steps(self) -> List[StepOutcome]:
        return [s for s in self.steps if not s.ok]

    @property
    def warnings(self) -> List[str]:
        warnings = [f"{s.name}: {s.detail}" for s in self.failed_steps]
        if self.residual:
            warnings.append(self.residual.message)
        return warnings


class CleanupEngine:
    """
    Strips driver software out of a container so host passthrough works.

    Example:
        engine = CleanupEngine(host, ComponentDetector(host, settings), settings)
        result = engine.clean("101")
    """

    def __init__(self, host: ContainerHost, detector: ComponentDetector, settings):
        self.host = host
        self.detector = detector
        self.settings = settings

    @timed
    def clean(self, ctid: str, report: Optional[ComponentScanReport] = None) -> CleanupResult:
        """
        Clean a container if the detector reports conflicts.

        Args:
            ctid: Container ID
            report: Scan report from an earlier detector pass; if None the
                container is started (if needed) and scanned first

        Returns:
            CleanupResult; a clean container yields skipped=True
        """
        if report is None:
            ensure_running(self.host, ctid)
            report = self.detector.scan(ctid)

        if report.clean:
            logger.info(f"CT {ctid} is already clean, nothing to remove")
            return CleanupResult(ctid=ctid, skipped=True)

        logger.info(f"Cleaning CT {ctid} ({report.category.value}: {report.evidence})")
        result = CleanupResult(ctid=ctid)
        excluded = self.detector.default_exclusions(ctid)

        self._lifecycle(result, "stop if running", lambda: self._stop_if_running(ctid))
        if not self._lifecycle(result, "start", lambda: self.host.start(ctid)):
            result.success = False
            for name in ("stop services", "purge packages", "remove repositories",
                         "delete vendor files", "remove bridge binary",
                         "remove unused dependencies", "count residual files"):
                result.steps.append(StepOutcome(name, False, "skipped: container not running"))
            logger.error(f"CT {ctid} could not be started, nothing was cleaned")
            return result

        self._run_step(result, ctid, "stop services", self._services_script())
        manager = detect_package_manager(self.host, ctid, timeout=self.settings.command_timeout)
        self._purge_packages(result, ctid, manager)
        self._run_step(result, ctid, "remove repositories", self._repositories_script())
        self._run_step(result, ctid, "delete vendor files", self._files_script(excluded))
        if self.settings.bridge_binary in excluded:
            result.steps.append(StepOutcome("remove bridge binary", True, "bind-mounted, kept"))
        else:
            self._run_step(result, ctid, "remove bridge binary",
                           f"rm -f {self._quoted(self.settings.bridge_binary)}")
        self._autoremove(result, ctid, manager)

        residual = self.detector.raw_file_search(ctid, excluded)
        result.residual_count = len(residual)
        result.steps.append(StepOutcome("count residual files", True, f"{len(residual)} remaining"))
        if residual:
            result.residual = CleanupResidual(ctid, len(residual), residual[:RESIDUAL_SAMPLE])
            logger.warning(result.residual.message)

        self._lifecycle(result, "stop", lambda: self.host.stop(ctid))

        if result.failed_steps:
            logger.warning(f"CT {ctid} cleaned with {len(result.failed_steps)} failed step(s)")
        else:
            log_success(logger, f"CT {ctid} cleaned")
        return result

    def _stop_if_running(self, ctid: str) -> None:
        if self.host.is_running(ctid):
            self.host.stop(ctid)

    def _lifecycle(self, result: CleanupResult, name: str, action: Callable[[], None]) -> bool:
        try:
            action()
        except ContainerLifecycleFailure as e:
            result.steps.append(StepOutcome(name, False, e.message))
            logger.warning(f"Cleanup step '{name}' failed: {e.message}")
            return False
        result.steps.append(StepOutcome(name, True))
        return True

    def _run_step(self, result: CleanupResult, ctid: str, name: str, script: str) -> bool:
        outcome = self.host.shell(ctid, script, timeout=self.settings.command_timeout)
        if outcome.ok:
            result.steps.append(StepOutcome(name, True))
            return True
        detail = "timed out" if outcome.timed_out else (outcome.stderr.strip() or f"exit {outcome.returncode}")
        result.steps.append(StepOutcome(name, False, detail))
        logger.warning(f"Cleanup step '{name}' failed in CT {ctid}: {detail}")
        return False

    def _purge_packages(self, result: CleanupResult, ctid: str, manager: Optional[PackageManager]) -> None:
        if manager is None:
            result.steps.append(StepOutcome("purge packages", False, "no supported package manager"))
            return

        packages = manager.list_matching(exclude=self.settings.remediation_packages)
        if not packages:
            result.steps.append(StepOutcome("purge packages", True, "none installed"))
            return

        outcome = manager.purge(packages)
        if outcome.ok:
            result.steps.append(StepOutcome("purge packages", True, " ".join(packages)))
        else:
            detail = outcome.stderr.strip() or f"exit {outcome.returncode}"
            result.steps.append(StepOutcome("purge packages", False, detail))
            logger.warning(f"Package purge failed in CT {ctid}: {detail}")

    def _autoremove(self, result: CleanupResult, ctid: str, manager: Optional[PackageManager]) -> None:
        if manager is None:
            result.steps.append(StepOutcome("remove unused dependencies", False, "no supported package manager"))
            return
        outcome = manager.autoremove()
        result.steps.append(StepOutcome(
            "remove unused dependencies",
            outcome.ok,
            "" if outcome.ok else (outcome.stderr.strip() or f"exit {outcome.returncode}"),
        ))

    def _services_script(self) -> str:
        services = " ".join(shlex.quote(s) for s in SERVICES)
        processes = " ".join(shlex.quote(p) for p in PROCESSES)
        return (
            f"for s in {services}; do "
            'systemctl stop "$s" 2>/dev/null; systemctl disable "$s" 2>/dev/null; done; '
            f'for p in {processes}; do pkill -x "$p" 2>/dev/null; done; true'
        )

    def _quoted(self, container_path: str) -> str:
        return shlex.quote(self.detector.path(container_path))

    def _glob(self, container_glob: str) -> str:
        directory, pattern = posixpath.split(container_glob)
        return f"{self._quoted(directory)}/{pattern}"

    def _repositories_script(self) -> str:
        return (
            f"rm -f {' '.join(self._glob(g) for g in REPOSITORY_GLOBS)}; "
            f"for f in {self._quoted('/etc/apt/sources.list')}; do "
            "[ -f \"$f\" ] && sed -i '/download\\.nvidia\\.com/d' \"$f\"; done; true"
        )

    def _files_script(self, excluded: List[str]) -> str:
        """Delete vendor-named files and the CUDA toolkit, sparing bind-mount targets."""
        names = " -o ".join(f"-name {shlex.quote(g)}" for g in VENDOR_FILE_GLOBS)
        keep = " ".join(f"! -path {self._quoted(p)}" for p in sorted(excluded))
        keep_lib = f"! -name {shlex.quote(library_stem(self.settings.bridge_library) + '*')}"
        keep_bridge = f"! -path {self._quoted(self.settings.bridge_binary)}"
        prefixes = " ".join(self._quoted(p) for p in FILE_PREFIXES + MODULE_PREFIXES)
        bins = " ".join(self._quoted(d) for d in BIN_DIRS)
        return (
            f"rm -rf {self._quoted('/usr/local/cuda')} {self._glob('/usr/local/cuda-*')}; "
            f"for d in {prefixes}; do "
            f"{REAL_DIR_GUARD}"
            f'find "$d" -xdev \\( {names} \\) {keep} {keep_lib} {keep_bridge} '
            "-prune -exec rm -rf {} + 2>/dev/null; "
            "done; "
            f"for d in {bins}; do "
            f"{REAL_DIR_GUARD}"
            'for f in "$d"/nvidia-*; do '
            '[ -e "$f" ] || continue; '
            f'case "$f" in {self._quoted(self.settings.bridge_binary)}) continue;; esac; '
            'rm -f "$f"; done; done; true'
        )
