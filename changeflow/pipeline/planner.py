"""Changeflow – Execution planning.

Before any change is applied the executor classifies every change unit
against the latest audit entry for its id. Planning has no side effects,
so a run that would hit checksum drift or an unresolved previous attempt
aborts before touching any target system.

Classification of the latest entry:

* none, ``ROLLED_BACK`` or ``IGNORED``: execute
* ``EXECUTED`` with the same checksum (or a legacy import without one): skip
* ``EXECUTED`` with a different checksum: :class:`ChecksumDriftError`
* ``PENDING`` or ``FAILED``: execute when the unit runs transactionally
  or uses :attr:`RecoveryStrategy.ALWAYS_RETRY`, otherwise
  :class:`ManualInterventionRequiredError`
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.core.errors import ChecksumDriftError, ManualInterventionRequiredError
from changeflow.core.logging import get_logger
from changeflow.pipeline.definition import ChangeUnit, PipelineDefinition, RecoveryStrategy, Stage
from changeflow.targets.base import TargetSystemAdapter
from changeflow.targets.registry import TargetSystemRegistry


logger = get_logger(__name__)


class PlannedAction(str, Enum):
    EXECUTE = "EXECUTE"
    SKIP = "SKIP"


@dataclass(frozen=True)
class UnitPlan:
    """Planned handling of one change unit."""

    stage: Stage
    unit: ChangeUnit
    adapter: TargetSystemAdapter
    action: PlannedAction
    latest: Optional[AuditEntry] = None
    reason: str = ""

    @property
    def change_id(self) -> str:
        return self.unit.change_id

    @property
    def transactional(self) -> bool:
        """True when the change and its audit write share a backend transaction."""

        return uses_transaction(self.unit, self.adapter)


@dataclass(frozen=True)
class ExecutionPlan:
    units: List[UnitPlan]

    def for_stage(self, stage_name: str) -> List[UnitPlan]:
        return [plan for plan in self.units if plan.stage.name == stage_name]


def uses_transaction(unit: ChangeUnit, adapter: TargetSystemAdapter) -> bool:
    return unit.transactional and adapter.is_transactional()


def plan_unit(
    stage: Stage,
    unit: ChangeUnit,
    adapter: TargetSystemAdapter,
    latest: Optional[AuditEntry],
) -> Optional[UnitPlan]:
    """Classify one change unit.

    Returns ``None`` when the unit needs manual intervention.

    Raises:
        ChecksumDriftError: If the unit was executed with different content.
    """

    def _plan(action: PlannedAction, reason: str) -> UnitPlan:
        return UnitPlan(stage, unit, adapter, action, latest, reason)

    if latest is None:
        return _plan(PlannedAction.EXECUTE, "no audit entry")

    state = latest.state
    if state is ChangeState.EXECUTED:
        if latest.matches_checksum(unit.checksum):
            return _plan(PlannedAction.SKIP, "already executed")
        logger.error(
            "Checksum drift on %s: audited %s, loaded %s",
            unit.change_id,
            latest.checksum,
            unit.checksum,
        )
        raise ChecksumDriftError(unit.change_id, latest.checksum, unit.checksum)

    if state in (ChangeState.PENDING, ChangeState.FAILED):
        if uses_transaction(unit, adapter):
            return _plan(PlannedAction.EXECUTE, f"retrying transactional change after {state.value}")
        if unit.recovery is RecoveryStrategy.ALWAYS_RETRY:
            return _plan(PlannedAction.EXECUTE, f"retrying after {state.value} (ALWAYS_RETRY)")
        return None

    return _plan(PlannedAction.EXECUTE, f"previous state {state.value}")


def plan_pipeline(
    definition: PipelineDefinition,
    latest_entries: Mapping[str, AuditEntry],
    registry: TargetSystemRegistry,
) -> ExecutionPlan:
    """Classify every change unit of ``definition``.

    Args:
        definition: Validated pipeline definition.
        latest_entries: Latest audit entry per change id.
        registry: Target system registry.

    Raises:
        TargetSystemNotFoundError: If a unit references an unknown target.
        ChecksumDriftError: On the first drifted unit, in pipeline order.
        ManualInterventionRequiredError: Listing every blocked unit of the
            first stage containing one.
    """

    registry.validate(definition)

    units: List[UnitPlan] = []
    blocked: Dict[str, List[str]] = {}
    for stage, unit in definition.iter_stage_units():
        adapter = registry.get(unit.target_system)
        if unit.transactional and not adapter.is_transactional():
            logger.warning(
                "Change %s is marked transactional but target %s is not; "
                "using the non-transactional protocol",
                unit.change_id,
                adapter.name,
            )
        plan = plan_unit(stage, unit, adapter, latest_entries.get(unit.change_id))
        if plan is None:
            blocked.setdefault(stage.name, []).append(unit.change_id)
            continue
        units.append(plan)

    if blocked:
        stage_name = next(stage.name for stage in definition.stages if stage.name in blocked)
        change_ids = blocked[stage_name]
        logger.error(
            "Manual intervention required in stage %s for %s", stage_name, ", ".join(change_ids)
        )
        raise ManualInterventionRequiredError(change_ids, stage_name)

    return ExecutionPlan(units)
