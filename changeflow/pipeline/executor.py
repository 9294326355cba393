"""
Changeflow: Pipeline Executor

This module runs a pipeline definition against the registered target
systems while holding the distributed pipeline lock, and records every
outcome in the audit store.

Key responsibilities:
- Acquire, renew (via :class:`LeaseKeeper`) and release the pipeline lease
- Optionally import legacy audit history before the first run
- Plan the run against the audit trail (skip / drift / manual intervention)
- Execute change units stage by stage, sequentially or with a bounded
  worker pool, using the transactional or the marker-based audit protocol
- Compensate failed non-transactional changes when a rollback is declared
- Stop cooperatively at checkpoints between change units

External dependencies:
- None beyond the audit store, lock service and target adapters

Database tables accessed:
- ``audit_entries`` / ``pipeline_locks`` through the injected services

Thread safety: One executor may serve several runs, one at a time per
instance. Within a bounded-parallel stage change units run on worker
threads; each change id is handled by exactly one worker.

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from changeflow.audit.models import AuditEntry, ChangeState, utcnow
from changeflow.audit.retry import RetryPolicy, call_with_retry
from changeflow.audit.store import AuditStore, latest_by_change
from changeflow.core.config import ChangeflowConfig
from changeflow.core.errors import (
    AuditWriteError,
    ChangeflowError,
    ExecutionError,
    LockExpiredError,
    PipelineCancelledError,
    RollbackError,
)
from changeflow.core.ids import generate_owner_id, generate_run_id
from changeflow.core.logging import get_logger
from changeflow.legacy.importer import LegacyImporter
from changeflow.legacy.sources import LegacySource
from changeflow.lock.keeper import LeaseKeeper
from changeflow.lock.lease import Lease, LockService
from changeflow.pipeline.definition import ChangeUnit, ExecutionMode, PipelineDefinition, Stage
from changeflow.pipeline.planner import ExecutionPlan, PlannedAction, UnitPlan, plan_pipeline
from changeflow.pipeline.result import ChangeResult, PipelineResult, StageResult
from changeflow.targets.base import TransactionContext
from changeflow.targets.registry import TargetSystemRegistry

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

DEFAULT_AUTHOR = "changeflow"


# ============================================================================
# Run options
# ============================================================================


class FailurePolicy(str, Enum):
    """What a failed non-transactional change does to the rest of the run.

    Transactional failures, drift and lock errors always halt the run.
    """

    FAIL_FAST = "FAIL_FAST"
    CONTINUE_ON_NON_TRANSACTIONAL_FAILURE = "CONTINUE_ON_NON_TRANSACTIONAL_FAILURE"


@dataclass
class RunOptions:
    """Per-run policy values.

    Attributes:
        lock_timeout_seconds: How long to wait for the pipeline lock;
            ``None`` uses the lock service configuration, ``0`` fails fast.
        parallelism: Overrides the concurrency limit of bounded-parallel
            stages.
        failure_policy: See :class:`FailurePolicy`.
        run_legacy_import: Import legacy history before planning.
        auto_rollback: Invoke the declared rollback of a failed
            non-transactional change.
        author: Author recorded for changes that declare none.
        cancel_event: Set to stop the run at the next checkpoint.
    """

    lock_timeout_seconds: Optional[float] = None
    parallelism: Optional[int] = None
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    run_legacy_import: bool = False
    auto_rollback: bool = True
    author: Optional[str] = None
    cancel_event: Optional[threading.Event] = field(default=None, repr=False)

    @classmethod
    def from_config(cls, config: ChangeflowConfig, **overrides) -> "RunOptions":
        values = {"lock_timeout_seconds": config.lock.acquire_timeout_seconds}
        values.update(overrides)
        return cls(**values)


# ============================================================================
# Internal run state
# ============================================================================


@dataclass
class _RunContext:
    run_id: str
    options: RunOptions
    keeper: LeaseKeeper
    result: PipelineResult

    @property
    def lease(self) -> Lease:
        return self.keeper.lease


@dataclass
class _UnitOutcome:
    change: ChangeResult
    failure: Optional[ChangeflowError] = None
    transactional: bool = False


# ============================================================================
# Executor
# ============================================================================


class PipelineExecutor:
    """Runs pipeline definitions under the distributed lock."""

    def __init__(
        self,
        audit_store: AuditStore,
        lock_service: LockService,
        registry: TargetSystemRegistry,
        *,
        legacy_source: Optional[LegacySource] = None,
        owner: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        renew_interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.audit_store = audit_store
        self.lock_service = lock_service
        self.registry = registry
        self.legacy_source = legacy_source
        self.owner = owner or generate_owner_id(lock_service.config.service_identifier)
        self.retry_policy = retry_policy or RetryPolicy()
        self.renew_interval_seconds = renew_interval_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        definition: PipelineDefinition,
        options: Optional[RunOptions] = None,
    ) -> PipelineResult:
        """Run ``definition`` and return the result.

        Pipeline-domain errors are captured in ``PipelineResult.error``;
        use :meth:`PipelineResult.raise_for_error` to re-raise them.

        Raises:
            PipelineDefinitionError: If ``definition`` is structurally invalid.
        """

        options = options or RunOptions()
        definition.validate()

        result = PipelineResult(
            run_id=generate_run_id("run"),
            started_at=self._clock(),
            stages=[_empty_stage_result(stage) for stage in definition.stages],
        )

        try:
            lease = self.lock_service.acquire(self.owner, options.lock_timeout_seconds)
        except ChangeflowError as exc:
            logger.error("Run %s could not acquire the pipeline lock: %s", result.run_id, exc)
            result.error = exc
            result.finished_at = self._clock()
            return result

        result.fencing_token = lease.fencing_token
        keeper = LeaseKeeper(self.lock_service, lease, self.renew_interval_seconds)
        ctx = _RunContext(result.run_id, options, keeper, result)
        logger.info(
            "Run %s started by %s (token=%d, %d stage(s))",
            result.run_id,
            self.owner,
            lease.fencing_token,
            len(definition.stages),
        )

        keeper.start()
        try:
            if options.run_legacy_import and self.legacy_source is not None:
                importer = LegacyImporter(self.audit_store, self.retry_policy)
                result.legacy_import = importer.import_if_needed(self.legacy_source, definition)

            latest = self._read(lambda: latest_by_change(self.audit_store.all_latest_entries()))
            plan = plan_pipeline(definition, latest, self.registry)
            self._execute_plan(ctx, definition, plan)
        except ChangeflowError as exc:
            logger.error("Run %s halted: %s", result.run_id, exc)
            result.error = exc
        finally:
            keeper.stop()
            self._release(keeper.lease)
            result.finished_at = self._clock()

        logger.info(
            "Run %s finished (success=%s): %s",
            result.run_id,
            result.success,
            ", ".join(f"{k}={v}" for k, v in result.summary().items()),
        )
        return result

    def rollback_change(
        self,
        definition: PipelineDefinition,
        change_id: str,
        options: Optional[RunOptions] = None,
    ) -> ChangeResult:
        """Compensate one change unit on operator request.

        Acquires the pipeline lock, invokes the unit's rollback and writes
        a ROLLED_BACK audit entry on success.

        Raises:
            PipelineDefinitionError: If ``change_id`` is unknown.
            LockBusyError: If another run holds the lock.
            RollbackError: If no rollback is declared or it fails.
        """

        options = options or RunOptions()
        stage, unit = definition.find(change_id)
        adapter = self.registry.get(unit.target_system)
        if unit.rollback is None:
            raise RollbackError(change_id, "no rollback operation declared")

        run_id = generate_run_id("rollback")
        lease = self.lock_service.acquire(self.owner, options.lock_timeout_seconds)
        try:
            self.lock_service.ensure_current(lease)
            change = ChangeResult(change_id, stage.name, unit.target_system, attempted=True)
            started = time.monotonic()
            outcome = adapter.rollback(unit)
            duration = _elapsed_millis(started)
            if not outcome.success:
                logger.error("Manual rollback of %s failed: %s", change_id, outcome.error)
                raise RollbackError(change_id, outcome.error or "rollback failed")

            self.lock_service.ensure_current(lease)
            entry = self._entry(run_id, lease, stage, unit, ChangeState.ROLLED_BACK, options, duration)
            self._append(entry)
            change.state = ChangeState.ROLLED_BACK
            change.duration_millis = duration
            logger.info("Manually rolled back %s", change_id)
            return change
        finally:
            self._release(lease)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _execute_plan(
        self,
        ctx: _RunContext,
        definition: PipelineDefinition,
        plan: ExecutionPlan,
    ) -> None:
        for stage, stage_result in zip(definition.stages, ctx.result.stages):
            stage_plans = plan.for_stage(stage.name)
            stage_result.started = True
            logger.info(
                "Stage %s started (%s, %d change unit(s), %d to execute)",
                stage.name,
                stage.mode.value,
                len(stage_plans),
                sum(1 for p in stage_plans if p.action is PlannedAction.EXECUTE),
            )

            if stage.mode is ExecutionMode.BOUNDED_PARALLEL:
                failure = self._run_parallel_stage(ctx, stage, stage_plans, stage_result)
            else:
                failure = self._run_sequential_stage(ctx, stage_plans, stage_result)

            if failure is not None:
                logger.error("Stage %s failed; later stages are not attempted", stage.name)
                raise failure
            logger.info("Stage %s completed", stage.name)

    def _run_sequential_stage(
        self,
        ctx: _RunContext,
        stage_plans: List[UnitPlan],
        stage_result: StageResult,
    ) -> Optional[ChangeflowError]:
        for plan in stage_plans:
            change = stage_result.get(plan.change_id)
            if plan.action is PlannedAction.SKIP:
                self._mark_ignored(change, plan)
                continue

            self._checkpoint(ctx, plan)
            outcome = self._run_unit(ctx, plan, change)
            if outcome.failure is not None and self._halts(ctx, outcome):
                return outcome.failure
        return None

    def _run_parallel_stage(
        self,
        ctx: _RunContext,
        stage: Stage,
        stage_plans: List[UnitPlan],
        stage_result: StageResult,
    ) -> Optional[ChangeflowError]:
        limit = stage.concurrency_limit(ctx.options.parallelism)
        halt = threading.Event()

        def _task(plan: UnitPlan) -> Optional[_UnitOutcome]:
            if halt.is_set():
                return None
            try:
                self._checkpoint(ctx, plan)
                outcome = self._run_unit(ctx, plan, stage_result.get(plan.change_id))
            except ChangeflowError:
                halt.set()
                raise
            if outcome.failure is not None and self._halts(ctx, outcome):
                halt.set()
            return outcome

        to_run: List[UnitPlan] = []
        for plan in stage_plans:
            if plan.action is PlannedAction.SKIP:
                self._mark_ignored(stage_result.get(plan.change_id), plan)
            else:
                to_run.append(plan)

        errors: List[ChangeflowError] = []
        outcomes: List[_UnitOutcome] = []
        with ThreadPoolExecutor(
            max_workers=limit, thread_name_prefix=f"changeflow-{stage.name}"
        ) as pool:
            futures = [(plan, pool.submit(_task, plan)) for plan in to_run]
            # Already-started units finish before the stage is judged.
            for plan, future in futures:
                try:
                    outcome = future.result()
                except ChangeflowError as exc:
                    errors.append(exc)
                    continue
                if outcome is not None:
                    outcomes.append(outcome)

        if errors:
            return errors[0]
        for outcome in outcomes:
            if outcome.failure is not None and self._halts(ctx, outcome):
                return outcome.failure
        return None

    def _halts(self, ctx: _RunContext, outcome: _UnitOutcome) -> bool:
        if outcome.transactional:
            return True
        return ctx.options.failure_policy is not FailurePolicy.CONTINUE_ON_NON_TRANSACTIONAL_FAILURE

    # ------------------------------------------------------------------
    # Change units
    # ------------------------------------------------------------------

    def _checkpoint(self, ctx: _RunContext, plan: UnitPlan) -> None:
        """Safe point between change units: cancellation and lease checks."""

        cancel = ctx.options.cancel_event
        if cancel is not None and cancel.is_set():
            logger.warning("Run %s cancelled before %s", ctx.run_id, plan.change_id)
            raise PipelineCancelledError(
                f"Run cancelled before change {plan.change_id!r}",
                {"run_id": ctx.run_id, "next_change_id": plan.change_id},
            )
        ctx.keeper.check()
        self.lock_service.ensure_current(ctx.lease)

    def _mark_ignored(self, change: ChangeResult, plan: UnitPlan) -> None:
        change.transition(ChangeState.IGNORED)
        logger.info("Change %s: PENDING -> IGNORED (%s)", plan.change_id, plan.reason)

    def _run_unit(self, ctx: _RunContext, plan: UnitPlan, change: ChangeResult) -> _UnitOutcome:
        change.attempted = True
        logger.info(
            "Change %s executing on %s (%s, %s)",
            plan.change_id,
            plan.adapter.name,
            "transactional" if plan.transactional else "non-transactional",
            plan.reason,
        )
        if plan.transactional:
            return self._run_transactional(ctx, plan, change)
        return self._run_non_transactional(ctx, plan, change)

    def _run_transactional(
        self, ctx: _RunContext, plan: UnitPlan, change: ChangeResult
    ) -> _UnitOutcome:
        unit = plan.unit
        started = time.monotonic()

        def _work(tx: TransactionContext) -> int:
            outcome = plan.adapter.execute(unit, tx)
            if not outcome.success:
                raise ExecutionError(unit.change_id, outcome.error or "execution failed")
            duration = _elapsed_millis(started)
            # A stale holder must not write further audit entries.
            self.lock_service.ensure_current(ctx.lease, transaction=tx)
            entry = self._entry(
                ctx.run_id, ctx.lease, plan.stage, unit, ChangeState.EXECUTED, ctx.options, duration
            )
            self.audit_store.append(entry, transaction=tx)
            return duration

        failure: Optional[ChangeflowError] = None
        try:
            change.duration_millis = plan.adapter.run_in_transaction(_work)
        except (ExecutionError, AuditWriteError) as exc:
            failure = exc
        except LockExpiredError:
            raise
        except ChangeflowError as exc:
            failure = ExecutionError(unit.change_id, str(exc))
        except Exception as exc:
            failure = ExecutionError(unit.change_id, f"transaction failed: {type(exc).__name__}: {exc}")

        if failure is None:
            change.transition(ChangeState.EXECUTED)
            logger.info("Change %s: PENDING -> EXECUTED (%d ms)", unit.change_id, change.duration_millis)
            return _UnitOutcome(change, transactional=True)

        change.duration_millis = _elapsed_millis(started)
        change.error = failure.to_dict()
        change.transition(ChangeState.FAILED)
        logger.error(
            "Change %s: PENDING -> FAILED (transaction rolled back, no audit entry): %s",
            unit.change_id,
            failure,
        )
        return _UnitOutcome(change, failure, transactional=True)

    def _run_non_transactional(
        self, ctx: _RunContext, plan: UnitPlan, change: ChangeResult
    ) -> _UnitOutcome:
        unit = plan.unit
        options = ctx.options

        # The marker tells the next run that this change may have started.
        self._append(
            self._entry(ctx.run_id, ctx.lease, plan.stage, unit, ChangeState.PENDING, options, 0)
        )

        started = time.monotonic()
        outcome = plan.adapter.execute(unit)
        change.duration_millis = _elapsed_millis(started)
        self.lock_service.ensure_current(ctx.lease)

        if outcome.success:
            self._append(
                self._entry(
                    ctx.run_id,
                    ctx.lease,
                    plan.stage,
                    unit,
                    ChangeState.EXECUTED,
                    options,
                    change.duration_millis,
                )
            )
            change.transition(ChangeState.EXECUTED)
            logger.info("Change %s: PENDING -> EXECUTED (%d ms)", unit.change_id, change.duration_millis)
            return _UnitOutcome(change)

        failure: ChangeflowError = ExecutionError(
            unit.change_id,
            f"{outcome.error or 'execution failed'}; execution may have partially occurred",
        )
        change.error = failure.to_dict()
        self._append(
            self._entry(
                ctx.run_id,
                ctx.lease,
                plan.stage,
                unit,
                ChangeState.FAILED,
                options,
                change.duration_millis,
                error=change.error,
            )
        )
        change.transition(ChangeState.FAILED)
        logger.error("Change %s: PENDING -> FAILED: %s", unit.change_id, outcome.error)

        if options.auto_rollback and unit.rollback is not None:
            failure = self._compensate(ctx, plan, change) or failure
        return _UnitOutcome(change, failure)

    def _compensate(
        self, ctx: _RunContext, plan: UnitPlan, change: ChangeResult
    ) -> Optional[RollbackError]:
        """Run the declared rollback of a failed change.

        Returns the :class:`RollbackError` when compensation fails.
        """

        unit = plan.unit
        started = time.monotonic()
        outcome = plan.adapter.rollback(unit)
        duration = _elapsed_millis(started)
        self.lock_service.ensure_current(ctx.lease)

        if not outcome.success:
            error = RollbackError(unit.change_id, outcome.error or "rollback failed")
            change.rollback_error = error.to_dict()
            logger.error("Change %s: rollback failed, stays FAILED: %s", unit.change_id, outcome.error)
            return error

        self._append(
            self._entry(
                ctx.run_id,
                ctx.lease,
                plan.stage,
                unit,
                ChangeState.ROLLED_BACK,
                ctx.options,
                duration,
                error=change.error,
            )
        )
        change.transition(ChangeState.ROLLED_BACK)
        logger.info("Change %s: FAILED -> ROLLED_BACK", unit.change_id)
        return None

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    def _entry(
        self,
        run_id: str,
        lease: Lease,
        stage: Stage,
        unit: ChangeUnit,
        state: ChangeState,
        options: RunOptions,
        duration_millis: int,
        error: Optional[dict] = None,
    ) -> AuditEntry:
        return AuditEntry(
            change_id=unit.change_id,
            stage=stage.name,
            state=state,
            author=unit.author or options.author or DEFAULT_AUTHOR,
            checksum=unit.checksum,
            timestamp=self._clock(),
            duration_millis=duration_millis,
            error=error,
            run_id=run_id,
            target_system=unit.target_system,
            metadata={"owner": lease.owner, "fencing_token": lease.fencing_token},
        )

    def _append(self, entry: AuditEntry) -> AuditEntry:
        return call_with_retry(
            lambda: self.audit_store.append(entry),
            self.retry_policy,
            operation=f"append {entry.state.value} for {entry.change_id}",
        )

    def _read(self, fn):
        return call_with_retry(fn, self.retry_policy, operation="read latest entries")

    def _release(self, lease: Lease) -> None:
        try:
            self.lock_service.release(lease)
        except Exception as exc:
            # The lease still expires on its own.
            logger.error("Failed to release lock %s: %s", lease.lock_key, exc, exc_info=True)


# ============================================================================
# Helpers
# ============================================================================


def _empty_stage_result(stage: Stage) -> StageResult:
    return StageResult(
        name=stage.name,
        mode=stage.mode,
        changes=[
            ChangeResult(unit.change_id, stage.name, unit.target_system)
            for unit in stage.change_units
        ],
    )


def _elapsed_millis(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
