"""Changeflow – Pipeline run results.

:class:`PipelineResult` enumerates every change unit of the definition
with the state it reached in the run. Units that were never attempted
(because an earlier failure halted the run) are reported as ``PENDING``
with ``attempted=False``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from changeflow.audit.models import ChangeState
from changeflow.core.errors import ChangeflowError, ExecutionError
from changeflow.core.types import ErrorDict
from changeflow.pipeline.definition import ExecutionMode
from changeflow.pipeline.state import validate_transition


@dataclass
class ChangeResult:
    """Outcome of one change unit within a run."""

    change_id: str
    stage: str
    target_system: str
    state: ChangeState = ChangeState.PENDING
    attempted: bool = False
    duration_millis: int = 0
    error: Optional[ErrorDict] = None
    rollback_error: Optional[ErrorDict] = None

    def transition(self, new_state: ChangeState) -> None:
        validate_transition(self.state, new_state)
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_id": self.change_id,
            "stage": self.stage,
            "target_system": self.target_system,
            "state": self.state.value,
            "attempted": self.attempted,
            "duration_millis": self.duration_millis,
            "error": self.error,
            "rollback_error": self.rollback_error,
        }


@dataclass
class StageResult:
    """Outcome of one stage; ``changes`` follow the stage's unit order."""

    name: str
    mode: ExecutionMode
    changes: List[ChangeResult] = field(default_factory=list)
    started: bool = False

    @property
    def failed(self) -> bool:
        return any(change.state is ChangeState.FAILED for change in self.changes)

    def get(self, change_id: str) -> ChangeResult:
        for change in self.changes:
            if change.change_id == change_id:
                return change
        raise KeyError(change_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "started": self.started,
            "failed": self.failed,
            "changes": [change.to_dict() for change in self.changes],
        }


@dataclass
class PipelineResult:
    """Summary of a pipeline run.

    Attributes:
        run_id: Identifier written into every audit entry of the run.
        started_at: When the run started.
        finished_at: When the run finished (lock released).
        stages: One :class:`StageResult` per definition stage.
        error: The error that halted the run, if any.
        fencing_token: Token of the lease the run held, if acquired.
        legacy_import: Result of the legacy import performed first, if any.
    """

    run_id: str
    started_at: datetime
    stages: List[StageResult] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    error: Optional[ChangeflowError] = None
    fencing_token: Optional[int] = None
    legacy_import: Optional[Any] = None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def changes(self) -> List[ChangeResult]:
        return [change for stage in self.stages for change in stage.changes]

    def get(self, change_id: str) -> ChangeResult:
        for change in self.changes:
            if change.change_id == change_id:
                return change
        raise KeyError(change_id)

    def _ids_in(self, state: ChangeState) -> List[str]:
        return [change.change_id for change in self.changes if change.state is state]

    @property
    def executed(self) -> List[str]:
        return self._ids_in(ChangeState.EXECUTED)

    @property
    def ignored(self) -> List[str]:
        return self._ids_in(ChangeState.IGNORED)

    @property
    def failed(self) -> List[str]:
        return self._ids_in(ChangeState.FAILED)

    @property
    def rolled_back(self) -> List[str]:
        return self._ids_in(ChangeState.ROLLED_BACK)

    @property
    def not_attempted(self) -> List[str]:
        return [
            change.change_id
            for change in self.changes
            if change.state is ChangeState.PENDING and not change.attempted
        ]

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed and not self.not_attempted

    # ------------------------------------------------------------------
    # Surfacing
    # ------------------------------------------------------------------

    def raise_for_error(self) -> None:
        """Re-raise the error that halted the run, if any.

        A run that continued past failed non-transactional changes raises
        an :class:`ExecutionError` for the first of them.
        """

        if self.error is not None:
            raise self.error
        for change in self.changes:
            if change.state is ChangeState.FAILED:
                cause = (change.error or {}).get("message", "execution failed")
                raise ExecutionError(change.change_id, cause)

    def summary(self) -> Dict[str, int]:
        return {
            "executed": len(self.executed),
            "ignored": len(self.ignored),
            "failed": len(self.failed),
            "rolled_back": len(self.rolled_back),
            "not_attempted": len(self.not_attempted),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "fencing_token": self.fencing_token,
            "summary": self.summary(),
            "error": self.error.to_dict() if self.error is not None else None,
            "legacy_import": (
                self.legacy_import.to_dict() if self.legacy_import is not None else None
            ),
            "stages": [stage.to_dict() for stage in self.stages],
        }
