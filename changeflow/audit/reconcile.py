"""Changeflow – Audit reconciliation, issue listing and operator fixes.

These helpers compare the audit trail with a pipeline definition without
running anything, and let an operator resolve a change whose outcome the
executor could not determine (latest entry PENDING or FAILED).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from changeflow.audit.models import AuditEntry, ChangeState, utcnow
from changeflow.audit.store import AuditStore, latest_by_change
from changeflow.core.errors import ChangeflowError
from changeflow.core.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.pipeline.definition import PipelineDefinition


logger = get_logger(__name__)

ISSUE_STATES = (ChangeState.PENDING, ChangeState.FAILED)
RESOLUTION_STATES = (ChangeState.EXECUTED, ChangeState.ROLLED_BACK)


class ReconcileStatus(str, Enum):
    APPLIED = "APPLIED"
    PENDING_EXECUTION = "PENDING_EXECUTION"
    DRIFTED = "DRIFTED"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass(frozen=True)
class UnitReport:
    change_id: str
    stage: str
    status: ReconcileStatus
    current_checksum: str
    latest: Optional[AuditEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_id": self.change_id,
            "stage": self.stage,
            "status": self.status.value,
            "current_checksum": self.current_checksum,
            "latest": self.latest.to_dict() if self.latest is not None else None,
        }


@dataclass
class AuditReport:
    """Result of :func:`reconcile`.

    Attributes:
        units: One report per change unit, in pipeline order.
        orphans: Latest entries of change ids absent from the definition.
    """

    units: List[UnitReport] = field(default_factory=list)
    orphans: List[AuditEntry] = field(default_factory=list)

    def with_status(self, status: ReconcileStatus) -> List[UnitReport]:
        return [unit for unit in self.units if unit.status is status]

    @property
    def drifted(self) -> List[UnitReport]:
        return self.with_status(ReconcileStatus.DRIFTED)

    @property
    def needs_attention(self) -> List[UnitReport]:
        return self.with_status(ReconcileStatus.NEEDS_ATTENTION)

    @property
    def up_to_date(self) -> bool:
        return all(unit.status is ReconcileStatus.APPLIED for unit in self.units)

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ReconcileStatus}
        for unit in self.units:
            counts[unit.status.value] += 1
        counts["ORPHANED"] = len(self.orphans)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "units": [unit.to_dict() for unit in self.units],
            "orphans": [entry.to_dict() for entry in self.orphans],
        }


def _status_for(latest: Optional[AuditEntry], checksum: str) -> ReconcileStatus:
    if latest is None:
        return ReconcileStatus.PENDING_EXECUTION
    if latest.state is ChangeState.EXECUTED:
        if latest.matches_checksum(checksum):
            return ReconcileStatus.APPLIED
        return ReconcileStatus.DRIFTED
    if latest.state in ISSUE_STATES:
        return ReconcileStatus.NEEDS_ATTENTION
    if latest.state is ChangeState.ROLLED_BACK:
        return ReconcileStatus.ROLLED_BACK
    # IGNORED entries (legacy) are re-executed on the next run.
    return ReconcileStatus.PENDING_EXECUTION


def reconcile(definition: "PipelineDefinition", store: AuditStore) -> AuditReport:
    """Compare ``definition`` with the audit trail in ``store``."""

    latest = latest_by_change(store.all_latest_entries())
    report = AuditReport()
    known = set()
    for stage, unit in definition.iter_stage_units():
        known.add(unit.change_id)
        entry = latest.get(unit.change_id)
        report.units.append(
            UnitReport(
                change_id=unit.change_id,
                stage=stage.name,
                status=_status_for(entry, unit.checksum),
                current_checksum=unit.checksum,
                latest=entry,
            )
        )

    report.orphans = sorted(
        (entry for change_id, entry in latest.items() if change_id not in known),
        key=AuditEntry.sort_key,
    )
    logger.info("Audit reconciliation: %s", report.summary())
    return report


def list_issues(store: AuditStore) -> List[AuditEntry]:
    """Return latest entries whose state is PENDING or FAILED."""

    return [entry for entry in store.all_latest_entries() if entry.state in ISSUE_STATES]


def fix_change(
    store: AuditStore,
    change_id: str,
    resolution: ChangeState,
    author: str,
    *,
    checksum: Optional[str] = None,
    reason: Optional[str] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AuditEntry:
    """Record an operator's resolution for ``change_id``.

    Args:
        store: Audit store to append to.
        change_id: Change to resolve; must have audit history.
        resolution: ``EXECUTED`` (the change is in effect) or
            ``ROLLED_BACK`` (it is not, and should run again).
        author: Operator recorded as the entry author.
        checksum: Checksum for an EXECUTED fix; defaults to the checksum
            of the latest entry.
        reason: Free-form note stored in the entry metadata.
        clock: Timestamp source.

    Raises:
        ValueError: For an unsupported resolution or a missing checksum.
        ChangeflowError: If ``change_id`` has no audit history.
    """

    resolution = ChangeState(resolution)
    if resolution not in RESOLUTION_STATES:
        raise ValueError(
            f"Resolution must be EXECUTED or ROLLED_BACK, got {resolution.value}"
        )

    latest = store.latest_entry(change_id)
    if latest is None:
        raise ChangeflowError(
            f"Change {change_id!r} has no audit history to fix", {"change_id": change_id}
        )

    checksum = checksum if checksum is not None else latest.checksum
    if resolution is ChangeState.EXECUTED and not checksum:
        raise ValueError(f"An EXECUTED fix for {change_id!r} needs the current checksum")

    metadata: Dict[str, Any] = {"fix": True, "previous_state": latest.state.value}
    if reason:
        metadata["reason"] = reason

    entry = AuditEntry(
        change_id=change_id,
        stage=latest.stage,
        state=resolution,
        author=author,
        checksum=checksum,
        timestamp=clock(),
        target_system=latest.target_system,
        metadata=metadata,
    )
    stored = store.append(entry)
    logger.info(
        "Change %s fixed by %s: %s -> %s", change_id, author, latest.state.value, resolution.value
    )
    return stored
