"""
Batch Orchestrator - Runs one passthrough operation over a list of containers.

Containers are processed one at a time and their outcomes are independent:
a failure is recorded and, when more containers remain, the operator is
asked whether to continue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from common.exceptions import (
    ContainerNotFoundError, PassthroughError, UserCancelled, VerificationFailure,
)
from common.logging_config import LogContext, log_success
from hardware_detect.device_inventory import HostDeviceInventory, require_inventory, scan_host_devices
from hardware_detect.library_resolver import LibraryMapping, LibraryResolver

from ..passthrough.cleanup import CleanupEngine
from ..passthrough.component_detector import ComponentDetector, ComponentScanReport
from .config_rewriter import ConfigRewriter
from .diagnostics import DiagnosisReport, Diagnostics
from .pct_host import ContainerHost, ensure_running, restart
from .verifier import Verifier

logger = logging.getLogger(__name__)


class Operation(Enum):
    CONFIGURE = "configure"
    CLEAN = "clean"
    VERIFY = "verify"
    DIAGNOSE = "diagnose"
    STRIP = "strip"


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ContainerOutcome:
    """What happened to one container in a batch."""
    ctid: str
    status: OutcomeStatus
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    error: Optional[dict] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "ctid": self.ctid,
            "status": self.status.value,
            "message": self.message,
            "warnings": self.warnings,
            "error": self.error,
        }


@dataclass
class BatchContext:
    """State carried through one batch run."""
    operation: Operation
    containers: List[str]
    inventory: Optional[HostDeviceInventory] = None
    mappings: Optional[List[LibraryMapping]] = None
    outcomes: Dict[str, ContainerOutcome] = field(default_factory=dict)
    scans: Dict[str, ComponentScanReport] = field(default_factory=dict)
    diagnoses: Dict[str, DiagnosisReport] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(o.succeeded for o in self.outcomes.values())

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes.values() if o.status == status)

    def ordered_outcomes(self) -> List[ContainerOutcome]:
        return [self.outcomes[c] for c in self.containers if c in self.outcomes]


def _never_continue(prompt: str) -> bool:
    return False


class BatchOrchestrator:
    """
    Drives configure/clean/verify/diagnose/strip over selected containers.

    Example:
        orchestrator = BatchOrchestrator(PctHost(settings), settings, confirm=ask_user)
        context = orchestrator.run(Operation.CONFIGURE, ["101", "102"])
    """

    def __init__(
        self,
        host: ContainerHost,
        settings,
        confirm: Callable[[str], bool] = _never_continue,
        detector: Optional[ComponentDetector] = None,
        cleanup: Optional[CleanupEngine] = None,
        resolver: Optional[LibraryResolver] = None,
        rewriter: Optional[ConfigRewriter] = None,
        verifier: Optional[Verifier] = None,
        diagnostics: Optional[Diagnostics] = None,
        inventory_scanner: Optional[Callable] = None,
    ):
        self.host = host
        self.settings = settings
        self.confirm = confirm
        self.detector = detector or ComponentDetector(host, settings)
        self.cleanup = cleanup or CleanupEngine(host, self.detector, settings)
        self.resolver = resolver or LibraryResolver(settings)
        self.rewriter = rewriter or ConfigRewriter(host, settings)
        self.verifier = verifier or Verifier(host, settings)
        self.diagnostics = diagnostics or Diagnostics(host, settings, self.detector)
        self._scan_inventory = inventory_scanner or scan_host_devices

        self._handlers = {
            Operation.CONFIGURE: self._configure,
            Operation.CLEAN: self._clean,
            Operation.VERIFY: self._verify,
            Operation.DIAGNOSE: self._diagnose,
            Operation.STRIP: self._strip,
        }

    def run(self, operation: Operation, ctids: Sequence[str]) -> BatchContext:
        """
        Run an operation over containers in order.

        Args:
            operation: Operation to perform
            ctids: Container IDs, processed in the given order

        Returns:
            BatchContext with one outcome per container
        """
        context = BatchContext(operation=operation, containers=list(dict.fromkeys(ctids)))
        logger.info(f"{operation.value.capitalize()}: {len(context.containers)} container(s)")

        try:
            for index, ctid in enumerate(context.containers):
                outcome = self._process(context, ctid)
                context.outcomes[ctid] = outcome

                remaining = context.containers[index + 1:]
                if outcome.status == OutcomeStatus.FAILED and remaining:
                    if not self.confirm(f"Continue with the next container ({remaining[0]})?"):
                        raise UserCancelled(remaining)
        except UserCancelled as e:
            context.cancelled = True
            logger.warning(e.message)
            for ctid in e.details.get("remaining", []):
                context.outcomes[ctid] = ContainerOutcome(
                    ctid=ctid,
                    status=OutcomeStatus.SKIPPED,
                    message="Skipped after cancellation",
                )

        self._log_summary(context)
        return context

    def _process(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        with LogContext(ctid=ctid, operation=context.operation.value):
            logger.info(f"--- Processing CT {ctid} ---")
            try:
                if not self.host.exists(ctid):
                    raise ContainerNotFoundError(ctid)
                outcome = self._handlers[context.operation](context, ctid)
            except PassthroughError as e:
                logger.error(f"CT {ctid}: {e.message}")
                return ContainerOutcome(
                    ctid=ctid,
                    status=OutcomeStatus.FAILED,
                    message=e.message,
                    error=e.to_dict(),
                )

            if outcome.succeeded:
                log_success(logger, f"CT {ctid}: {outcome.message}")
            return outcome

    def _inventory(self, context: BatchContext) -> HostDeviceInventory:
        if context.inventory is None:
            context.inventory = self._scan_inventory(self.settings)
        return require_inventory(context.inventory, self.settings.device_paths)

    def _mappings(self, context: BatchContext) -> List[LibraryMapping]:
        if context.mappings is None:
            names = list(self.settings.required_libraries)
            context.mappings = self.resolver.resolve(names)
        return context.mappings

    def _configure(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        inventory = self._inventory(context)
        warnings: List[str] = []

        ensure_running(self.host, ctid)
        report = self.detector.scan(ctid)
        context.scans[ctid] = report
        if report.conflict:
            cleaned = self.cleanup.clean(ctid, report)
            warnings.extend(cleaned.warnings)
            if not cleaned.success:
                return ContainerOutcome(
                    ctid=ctid,
                    status=OutcomeStatus.FAILED,
                    message="Cleanup could not run",
                    warnings=warnings,
                )

        mappings = self._mappings(context)
        warnings.extend(self.resolver.warnings)
        self.rewriter.apply(ctid, inventory, mappings)

        result = self.verifier.verify(ctid)
        if not result.succeeded:
            raise VerificationFailure(ctid, result.message, result.remediation_attempted)

        return ContainerOutcome(
            ctid=ctid,
            status=OutcomeStatus.SUCCEEDED,
            message="GPU passthrough configured and verified",
            warnings=warnings,
        )

    def _clean(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        stripped = self.rewriter.strip(ctid)

        # Restart so bind mounts from the removed block are gone before scanning
        restart(self.host, ctid)
        report = self.detector.scan(ctid, excluded_paths=())
        context.scans[ctid] = report
        cleaned = self.cleanup.clean(ctid, report)
        if cleaned.skipped and self.host.is_running(ctid):
            self.host.stop(ctid)

        status = OutcomeStatus.SUCCEEDED if cleaned.success else OutcomeStatus.FAILED
        removed = len(stripped.removed_lines)
        if cleaned.skipped:
            message = f"Removed {removed} configuration line(s), no driver components found"
        else:
            message = f"Removed {removed} configuration line(s) and cleaned driver components"
        return ContainerOutcome(ctid=ctid, status=status, message=message, warnings=cleaned.warnings)

    def _verify(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        result = self.verifier.verify(ctid)
        if not result.succeeded:
            raise VerificationFailure(ctid, result.message, result.remediation_attempted)
        return ContainerOutcome(ctid=ctid, status=OutcomeStatus.SUCCEEDED, message=result.message)

    def _diagnose(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        if context.inventory is None:
            context.inventory = self._scan_inventory(self.settings)
        report = self.diagnostics.diagnose(ctid, context.inventory)
        context.diagnoses[ctid] = report
        if report.scan:
            context.scans[ctid] = report.scan
        if report.healthy:
            return ContainerOutcome(ctid=ctid, status=OutcomeStatus.SUCCEEDED, message="No issues found")
        return ContainerOutcome(
            ctid=ctid,
            status=OutcomeStatus.FAILED,
            message=f"{len(report.issues)} issue(s) found",
            warnings=list(report.issues),
        )

    def _strip(self, context: BatchContext, ctid: str) -> ContainerOutcome:
        result = self.rewriter.strip(ctid)
        return ContainerOutcome(
            ctid=ctid,
            status=OutcomeStatus.SUCCEEDED,
            message=f"Removed {len(result.removed_lines)} configuration line(s)",
        )

    def _log_summary(self, context: BatchContext) -> None:
        logger.info(
            f"Summary: {context.count(OutcomeStatus.SUCCEEDED)} succeeded, "
            f"{context.count(OutcomeStatus.FAILED)} failed, "
            f"{context.count(OutcomeStatus.SKIPPED)} skipped"
        )
        for outcome in context.ordered_outcomes():
            line = f"CT {outcome.ctid}: {outcome.status.value} - {outcome.message}"
            if outcome.status == OutcomeStatus.FAILED:
                logger.error(line)
            elif outcome.status == OutcomeStatus.SKIPPED:
                logger.warning(line)
            else:
                log_success(logger, line)
            for warning in outcome.warnings:
                logger.warning(f"CT {outcome.ctid}: {warning}")
