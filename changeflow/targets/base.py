"""
Changeflow: Target System Adapter Contract

This module defines the capability contract every backend integration
implements so that the pipeline executor can apply change units to it.

Key responsibilities:
- Define :class:`TargetSystemAdapter` (execute / rollback / transactions)
- Define the typed :class:`ExecutionOutcome` returned by adapters
- Define :class:`TransactionContext`, the handle shared by the change
  execution and the audit write inside one backend transaction

External dependencies:
- None (backend drivers live in concrete adapters)

Database tables accessed:
- None directly

Thread safety: Adapters must tolerate concurrent ``execute`` calls for
different change units when used from a bounded-parallel stage.

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

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, List, Optional, TypeVar

from changeflow.core.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.pipeline.definition import ChangeUnit

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# Data Models
# ============================================================================


@dataclass(frozen=True)
class ExecutionOutcome:
    """Typed result of an adapter call.

    Adapters never let a change's exception escape ``execute`` or
    ``rollback``; they report it here so that the executor can record it.

    Attributes:
        success: Whether the change (or its rollback) completed.
        error: Human-readable failure description when ``success`` is False.
        exception: The exception raised by the change callable, if any.
        value: Whatever the change callable returned on success.
    """

    success: bool
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, compare=False)
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> "ExecutionOutcome":
        return cls(success=True, value=value)

    @classmethod
    def failed(
        cls, error: str, exception: Optional[BaseException] = None
    ) -> "ExecutionOutcome":
        return cls(success=False, error=error, exception=exception)


@dataclass
class TransactionContext:
    """Handle for one open backend transaction.

    Attributes:
        target_system: Name of the adapter that opened the transaction.
        handle: Object passed to change callables (cursor, staged state...).
        connection: Backend connection when the transaction lives in a
            PostgreSQL database, else ``None``.
        database: Owner of ``connection`` (the :class:`DatabaseManager`);
            lets stores tell whether they share the transaction's database.
    """

    target_system: str
    handle: Any = None
    connection: Any = None
    database: Any = None
    _deferred: List[Callable[[], Any]] = field(default_factory=list, repr=False)

    def defer(self, action: Callable[[], Any]) -> None:
        """Register ``action`` to run just before the transaction commits.

        If any deferred action raises, the transaction is rolled back.
        """

        self._deferred.append(action)

    def flush_deferred(self) -> None:
        """Run deferred actions in registration order."""

        actions, self._deferred = self._deferred, []
        for action in actions:
            action()


@dataclass(frozen=True)
class TargetSystemDescriptor:
    """Capability descriptor consumed read-only by the executor."""

    name: str
    transactional: bool
    adapter: "TargetSystemAdapter"


# ============================================================================
# Helpers
# ============================================================================


def invoke_change(fn: Callable[[Any], Any], handle: Any) -> ExecutionOutcome:
    """Call a change callable and convert its exception into an outcome."""

    try:
        return ExecutionOutcome.ok(fn(handle))
    except Exception as exc:
        logger.warning("Change callable %r raised: %s", fn, exc)
        return ExecutionOutcome.failed(f"{type(exc).__name__}: {exc}", exc)


class _OutcomeFailed(Exception):
    """Aborts an adapter-owned transaction for a failed outcome."""

    def __init__(self, outcome: ExecutionOutcome) -> None:
        super().__init__(outcome.error)
        self.outcome = outcome


# ============================================================================
# Adapter contract
# ============================================================================


class TargetSystemAdapter(ABC):
    """Backend integration applying change units.

    Change callables receive a single argument: the adapter's handle.
    Non-transactional adapters pass their resource object; transactional
    adapters pass ``transaction.handle``.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def is_transactional(self) -> bool:
        """Return True when the adapter implements :meth:`run_in_transaction`."""

    @abstractmethod
    def _handle(self, transaction: Optional[TransactionContext]) -> Any:
        """Return the object handed to change callables."""

    def execute(
        self,
        unit: "ChangeUnit",
        transaction: Optional[TransactionContext] = None,
    ) -> ExecutionOutcome:
        """Apply ``unit``.

        Transactional adapters called without a transaction open their own
        one so that a failed change leaves no partial state.
        """

        return self._call(unit.execute, transaction)

    def rollback(
        self,
        unit: "ChangeUnit",
        transaction: Optional[TransactionContext] = None,
    ) -> ExecutionOutcome:
        """Compensate ``unit`` using its declared rollback."""

        if unit.rollback is None:
            return ExecutionOutcome.failed(
                f"Change {unit.change_id!r} declares no rollback"
            )
        return self._call(unit.rollback, transaction)

    def run_in_transaction(self, work: Callable[[TransactionContext], T]) -> T:
        """Run ``work`` inside one backend transaction.

        ``work`` receives the open :class:`TransactionContext`. The
        transaction commits when ``work`` returns and every deferred action
        succeeded; it rolls back, and the exception propagates, otherwise.
        """

        raise NotImplementedError(
            f"Target system {self.name!r} is not transactional"
        )

    @property
    def descriptor(self) -> TargetSystemDescriptor:
        return TargetSystemDescriptor(
            name=self.name,
            transactional=self.is_transactional(),
            adapter=self,
        )

    def _call(
        self,
        fn: Callable[[Any], Any],
        transaction: Optional[TransactionContext],
    ) -> ExecutionOutcome:
        if transaction is not None or not self.is_transactional():
            return invoke_change(fn, self._handle(transaction))

        def _work(tx: TransactionContext) -> ExecutionOutcome:
            outcome = invoke_change(fn, self._handle(tx))
            if not outcome.success:
                raise _OutcomeFailed(outcome)
            return outcome

        try:
            return self.run_in_transaction(_work)
        except _OutcomeFailed as exc:
            return exc.outcome

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, "
            f"transactional={self.is_transactional()})"
        )
