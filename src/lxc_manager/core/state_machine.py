"""
Verification State Machine

Tracks the stages of post-configuration verification and rejects
transitions the protocol does not allow.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class VerificationState(Enum):
    """Stages of the verify/remediate protocol."""
    RESTARTING = "restarting"
    DEVICE_CHECK = "device_check"
    FUNCTIONAL_PROBE = "functional_probe"
    REMEDIATING = "remediating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationState.SUCCEEDED, VerificationState.FAILED)


# Format: {current_state: {allowed next states}}
VALID_TRANSITIONS: Dict[VerificationState, Set[VerificationState]] = {
    VerificationState.RESTARTING: {
        VerificationState.DEVICE_CHECK,
        VerificationState.FAILED,
    },
    VerificationState.DEVICE_CHECK: {
        VerificationState.FUNCTIONAL_PROBE,
        VerificationState.FAILED,
    },
    VerificationState.FUNCTIONAL_PROBE: {
        VerificationState.SUCCEEDED,
        VerificationState.REMEDIATING,
        VerificationState.FAILED,
    },
    VerificationState.REMEDIATING: {
        VerificationState.FUNCTIONAL_PROBE,
        VerificationState.FAILED,
    },
}


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


class VerificationStateMachine:
    """
    Walks one container through the verification stages.

    Remediation may happen at most once; a second entry into REMEDIATING
    is rejected even though the table would allow it.
    """

    def __init__(self, ctid: str, initial_state: VerificationState = VerificationState.RESTARTING):
        self.ctid = ctid
        self._state = initial_state
        self._history: List[VerificationState] = [initial_state]

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def history(self) -> List[VerificationState]:
        return list(self._history)

    @property
    def remediated(self) -> bool:
        return VerificationState.REMEDIATING in self._history

    def can_transition(self, target: VerificationState) -> bool:
        """Check if a transition is valid from current state."""
        if target == VerificationState.REMEDIATING and self.remediated:
            return False
        return target in VALID_TRANSITIONS.get(self._state, set())

    def transition(self, target: VerificationState) -> VerificationState:
        """
        Move to the next stage.

        Raises:
            StateTransitionError: If transition is not valid
        """
        if not self.can_transition(target):
            raise StateTransitionError(
                f"Cannot move from {self._state.name} to {target.name} "
                f"for CT {self.ctid}"
            )

        old_state = self._state
        self._state = target
        self._history.append(target)
        logger.debug(f"CT {self.ctid}: {old_state.name} -> {target.name}")

        return target

    def fail(self) -> VerificationState:
        """Shortcut for the transition into FAILED."""
        return self.transition(VerificationState.FAILED)

