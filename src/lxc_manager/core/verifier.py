"""
Verifier - Confirms a configured container can actually use the GPU.

Restarts the container so the new configuration takes effect, waits for the
primary device node to appear, runs the functional probe and, if the probe
fails, tries exactly one remediation before probing again. The container's
configuration document is never modified here.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List

from common.decorators import timed
from common.exceptions import ContainerLifecycleFailure
from common.logging_config import log_success

from ..passthrough.package_manager import detect_package_manager
from .pct_host import ContainerHost, restart
from .state_machine import VerificationState, VerificationStateMachine

logger = logging.getLogger(__name__)


class Verdict(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class VerificationResult:
    """Outcome of verifying one container."""
    ctid: str
    verdict: Verdict = Verdict.FAILED
    device_visible: bool = False
    probe_passed: bool = False
    remediation_attempted: bool = False
    message: str = ""
    history: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.verdict == Verdict.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "ctid": self.ctid,
            "verdict": self.verdict.value,
            "device_visible": self.device_visible,
            "probe_passed": self.probe_passed,
            "remediation_attempted": self.remediation_attempted,
            "message": self.message,
            "history": self.history,
        }


class Verifier:
    """
    Runs the verify/remediate protocol for a container.

    Example:
        result = Verifier(host, settings).verify("101")
        if not result.succeeded:
            print(result.message)
    """

    def __init__(
        self,
        host: ContainerHost,
        settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.host = host
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    @timed
    def verify(self, ctid: str) -> VerificationResult:
        """
        Verify GPU access inside a container.

        Args:
            ctid: Container ID

        Returns:
            VerificationResult with the verdict and the stages traversed
        """
        machine = VerificationStateMachine(ctid)
        result = VerificationResult(ctid=ctid)

        logger.info(f"Restarting CT {ctid} to apply configuration")
        try:
            restart(self.host, ctid)
        except ContainerLifecycleFailure as e:
            machine.fail()
            return self._finish(result, machine, f"Container restart failed: {e.message}")

        machine.transition(VerificationState.DEVICE_CHECK)
        result.device_visible = self.wait_for_device(ctid)
        if not result.device_visible:
            machine.fail()
            return self._finish(
                result, machine,
                f"{self.settings.primary_device} not visible inside the container "
                f"after {self.settings.device_wait_timeout:g}s",
            )

        machine.transition(VerificationState.FUNCTIONAL_PROBE)
        if self.probe(ctid):
            result.probe_passed = True
            machine.transition(VerificationState.SUCCEEDED)
            return self._finish(result, machine, "GPU is usable inside the container")

        logger.warning(f"Probe failed in CT {ctid}, attempting remediation")
        machine.transition(VerificationState.REMEDIATING)
        result.remediation_attempted = True
        remediated = self.remediate(ctid)

        machine.transition(VerificationState.FUNCTIONAL_PROBE)
        if self.probe(ctid):
            result.probe_passed = True
            machine.transition(VerificationState.SUCCEEDED)
            return self._finish(result, machine, "GPU is usable inside the container after remediation")

        machine.fail()
        reason = "Probe still failing after remediation"
        if not remediated:
            reason += " (installing the management library failed)"
        return self._finish(result, machine, reason)

    def wait_for_device(self, ctid: str) -> bool:
        """Poll for the primary device node inside the container."""
        script = f"test -e {shlex.quote(self.settings.primary_device)}"
        deadline = self._clock() + self.settings.device_wait_timeout
        while True:
            if self.host.shell(ctid, script, timeout=self.settings.command_timeout).ok:
                logger.info(f"{self.settings.primary_device} visible in CT {ctid}")
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(self.settings.device_poll_interval)

    def probe(self, ctid: str) -> bool:
        """Run the functional probe; only the exit status counts."""
        result = self.host.exec(ctid, self.settings.probe_command, timeout=self.settings.probe_timeout)
        if result.timed_out:
            logger.warning(f"Probe timed out after {self.settings.probe_timeout:g}s in CT {ctid}")
        elif not result.ok:
            logger.debug(f"Probe exited {result.returncode} in CT {ctid}: {result.stderr.strip()}")
        return result.ok

    def remediate(self, ctid: str) -> bool:
        """Install the management library with the container's package manager."""
        manager = detect_package_manager(self.host, ctid, timeout=self.settings.command_timeout)
        if manager is None:
            return False
        result = manager.install(list(self.settings.remediation_packages))
        if not result.ok:
            logger.warning(f"Remediation install failed in CT {ctid}: {result.stderr.strip()}")
        return result.ok

    def _finish(
        self,
        result: VerificationResult,
        machine: VerificationStateMachine,
        message: str,
    ) -> VerificationResult:
        result.verdict = Verdict.SUCCEEDED if machine.state == VerificationState.SUCCEEDED else Verdict.FAILED
        result.message = message
        result.history = [s.value for s in machine.history]
        if result.succeeded:
            log_success(logger, f"CT {result.ctid}: {message}")
        else:
            logger.error(f"CT {result.ctid}: {message}")
        return result
