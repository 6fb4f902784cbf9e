"""
LXC Manager Core - Container configuration, verification and batch runs.
"""

from .config_document import ConfigDocument, LineKind
from .config_rewriter import ConfigRewriter, ApplyResult
from .orchestrator import BatchOrchestrator, BatchContext, ContainerOutcome, Operation, OutcomeStatus
from .pct_host import ContainerHost, PctHost, ContainerStatus, ContainerRecord, CommandResult
from .settings import PassthroughSettings, load_settings
from .verifier import Verifier, VerificationResult, Verdict

__all__ = [
    "ConfigDocument",
    "LineKind",
    "ConfigRewriter",
    "ApplyResult",
    "BatchOrchestrator",
    "BatchContext",
    "ContainerOutcome",
    "Operation",
    "OutcomeStatus",
    "ContainerHost",
    "PctHost",
    "ContainerStatus",
    "ContainerRecord",
    "CommandResult",
    "PassthroughSettings",
    "load_settings",
    "Verifier",
    "VerificationResult",
    "Verdict",
]
