"""Changeflow – Per-run change unit state machine.

Within one run every change unit starts in ``PENDING`` and moves to a
terminal state::

    PENDING -> EXECUTED | FAILED | IGNORED
    FAILED  -> ROLLED_BACK

``FAILED`` stays terminal unless a rollback succeeds.
"""

from __future__ import annotations

from changeflow.audit.models import ChangeState
from changeflow.core.errors import ChangeflowError


class ChangeStateError(ChangeflowError):
    """Raised when an invalid change state transition is requested."""


_ALLOWED_SUCCESSORS: dict[ChangeState, set[ChangeState]] = {
    ChangeState.PENDING: {ChangeState.EXECUTED, ChangeState.FAILED, ChangeState.IGNORED},
    ChangeState.FAILED: {ChangeState.ROLLED_BACK},
    ChangeState.EXECUTED: set(),
    ChangeState.IGNORED: set(),
    ChangeState.ROLLED_BACK: set(),
}

TERMINAL_STATES = frozenset(
    {ChangeState.EXECUTED, ChangeState.FAILED, ChangeState.IGNORED, ChangeState.ROLLED_BACK}
)


def validate_transition(current: ChangeState, new: ChangeState) -> None:
    """Validate a state transition.

    Raises :class:`ChangeStateError` if the transition is not allowed.
    """

    if current == new:
        return

    successors = _ALLOWED_SUCCESSORS.get(current, set())
    if new not in successors:
        raise ChangeStateError(
            f"Invalid transition {current.value} -> {new.value}",
            {"from": current.value, "to": new.value},
        )


def is_terminal(state: ChangeState) -> bool:
    return state in TERMINAL_STATES
