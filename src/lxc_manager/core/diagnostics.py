"""
Diagnostics - Read-only health report for a container's GPU passthrough.

Nothing here starts, stops or writes anything; live checks are only run
when the container is already running.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import List, Optional

from hardware_detect.device_inventory import HostDeviceInventory

from ..passthrough.component_detector import ComponentDetector, ComponentScanReport
from .config_document import ConfigDocument, LineKind
from .pct_host import ContainerHost, ContainerStatus

logger = logging.getLogger(__name__)


@dataclass
class DiagnosisReport:
    """Findings for one container."""
    ctid: str
    status: ContainerStatus = ContainerStatus.UNKNOWN
    has_block: bool = False
    cgroup_rules: int = 0
    configured_devices: List[str] = field(default_factory=list)
    missing_devices: List[str] = field(default_factory=list)
    stale_devices: List[str] = field(default_factory=list)
    mounted_paths: List[str] = field(default_factory=list)
    device_visible: Optional[bool] = None
    probe_passed: Optional[bool] = None
    scan: Optional[ComponentScanReport] = None
    issues: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {
            "ctid": self.ctid,
            "status": self.status.value,
            "has_block": self.has_block,
            "cgroup_rules": self.cgroup_rules,
            "configured_devices": self.configured_devices,
            "missing_devices": self.missing_devices,
            "stale_devices": self.stale_devices,
            "mounted_paths": self.mounted_paths,
            "device_visible": self.device_visible,
            "probe_passed": self.probe_passed,
            "scan": self.scan.to_dict() if self.scan else None,
            "issues": self.issues,
        }


class Diagnostics:
    """Inspects configuration and, for running containers, live GPU access."""

    def __init__(self, host: ContainerHost, settings, detector: Optional[ComponentDetector] = None):
        self.host = host
        self.settings = settings
        self.detector = detector or ComponentDetector(host, settings)

    def diagnose(self, ctid: str, inventory: HostDeviceInventory) -> DiagnosisReport:
        """
        Build a diagnosis report.

        Args:
            ctid: Container ID
            inventory: Current host device inventory

        Returns:
            DiagnosisReport; ``issues`` is empty when everything checks out
        """
        report = DiagnosisReport(ctid=ctid)
        document = ConfigDocument.parse(self.host.read_config(ctid), marker=self.settings.marker)
        report.status = self.host.status(ctid)

        self._check_document(report, document, inventory)

        if report.status != ContainerStatus.RUNNING:
            logger.info(f"CT {ctid} is {report.status.value}, skipping live checks")
            return report

        report.device_visible = self.host.shell(
            ctid,
            f"test -e {shlex.quote(self.settings.primary_device)}",
            timeout=self.settings.command_timeout,
        ).ok
        if not report.device_visible:
            report.issues.append(f"{self.settings.primary_device} is not visible inside the container")

        probe = self.host.exec(ctid, self.settings.probe_command, timeout=self.settings.probe_timeout)
        report.probe_passed = probe.ok
        if not probe.ok:
            report.issues.append(f"{' '.join(self.settings.probe_command)} failed inside the container")

        report.scan = self.detector.scan(ctid, report.mounted_paths)
        if report.scan.conflict:
            report.issues.append(
                f"Conflicting {report.scan.category.value.replace('_', ' ')}: {report.scan.evidence}"
            )

        return report

    def _check_document(
        self,
        report: DiagnosisReport,
        document: ConfigDocument,
        inventory: HostDeviceInventory,
    ) -> None:
        report.has_block = any(line.kind == LineKind.MARKER for line in document.lines)
        report.cgroup_rules = sum(1 for line in document.managed_lines if line.kind == LineKind.CGROUP_RULE)
        report.configured_devices = document.device_paths()
        report.mounted_paths = document.mounted_container_paths()

        if not document.has_managed_block:
            report.issues.append("No GPU passthrough configuration")
            return
        if not report.has_block:
            report.issues.append("Passthrough lines present without the managed marker")

        configured = set(report.configured_devices)
        report.missing_devices = [p for p in inventory.paths if p not in configured]
        report.stale_devices = [p for p in report.configured_devices if not inventory.has(p)]
        if report.missing_devices:
            report.issues.append(f"Host devices not passed through: {', '.join(report.missing_devices)}")
        if report.stale_devices:
            report.issues.append(f"Configured devices missing on host: {', '.join(report.stale_devices)}")
        if report.cgroup_rules == 0:
            report.issues.append("No cgroup device rules")

        bridge = "/" + self.settings.bridge_binary.lstrip("/")
        if bridge not in report.mounted_paths:
            report.issues.append(f"{self.settings.bridge_binary} is not bind-mounted")
