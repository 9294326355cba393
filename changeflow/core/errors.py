"""
Changeflow: Error Taxonomy

This module defines the exception hierarchy shared by the executor, the
audit store, the distributed lock and the legacy importer. Every error
raised for a pipeline-domain reason derives from :class:`ChangeflowError`
so that callers can surface it uniformly in a pipeline result.

Key responsibilities:
- Define one exception type per failure class of a pipeline run
- Carry structured details that can be serialised into results and logs

External dependencies:
- None

Database tables accessed:
- None

Thread safety: Thread-safe (exception types only)

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

from typing import Any, Dict, Optional, Sequence

# ============================================================================
# Base
# ============================================================================


class ChangeflowError(Exception):
    """Base class for all Changeflow pipeline errors.

    Attributes:
        details: Structured, JSON-serialisable context for the error.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable representation used in results and audit rows."""

        return {
            "type": self.__class__.__name__,
            "message": str(self),
            "details": dict(self.details),
        }


# ============================================================================
# Definition / registry
# ============================================================================


class PipelineDefinitionError(ChangeflowError):
    """Raised when a pipeline definition artifact is structurally invalid."""


class TargetSystemNotFoundError(ChangeflowError):
    """Raised when a change unit references an unregistered target system."""

    def __init__(self, target_system: str) -> None:
        super().__init__(
            f"Target system {target_system!r} is not registered",
            {"target_system": target_system},
        )
        self.target_system = target_system


# ============================================================================
# Audit
# ============================================================================


class ChecksumDriftError(ChangeflowError):
    """Raised when an executed change no longer matches its audited checksum."""

    def __init__(self, change_id: str, recorded: str, current: str) -> None:
        super().__init__(
            f"Checksum drift for change {change_id!r}: audited {recorded!r}, "
            f"loaded {current!r}",
            {"change_id": change_id, "recorded": recorded, "current": current},
        )
        self.change_id = change_id
        self.recorded = recorded
        self.current = current


class AuditWriteError(ChangeflowError):
    """Raised when the audit store cannot persist or read an entry.

    ``transient`` marks failures (connection drops, timeouts) that are worth
    retrying with backoff before surfacing.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.transient = transient


class ManualInterventionRequiredError(ChangeflowError):
    """Raised when a change's prior outcome is unknown and must be resolved.

    This happens for non-transactional changes whose latest audit entry is
    PENDING (crash between execution and audit write) or FAILED, unless the
    change opts into automatic retries.
    """

    def __init__(self, change_ids: Sequence[str], stage: str) -> None:
        ids = list(change_ids)
        super().__init__(
            f"Manual intervention required in stage {stage!r} for changes "
            f"{', '.join(ids)}: verify the target system and resolve each "
            "change with an audit fix (EXECUTED or ROLLED_BACK)",
            {"change_ids": ids, "stage": stage},
        )
        self.change_ids = ids
        self.stage = stage


# ============================================================================
# Lock
# ============================================================================


class LockBusyError(ChangeflowError):
    """Raised when the pipeline lock is held by another owner."""


class LockExpiredError(ChangeflowError):
    """Raised when a lease expired, was lost, or carries a stale fencing token."""


# ============================================================================
# Execution
# ============================================================================


class ExecutionError(ChangeflowError):
    """Raised when a target system adapter reports a failed execution."""

    def __init__(self, change_id: str, cause: str) -> None:
        super().__init__(
            f"Change {change_id!r} failed: {cause}",
            {"change_id": change_id, "cause": cause},
        )
        self.change_id = change_id
        self.cause = cause


class RollbackError(ChangeflowError):
    """Raised when compensating a failed change itself fails."""

    def __init__(self, change_id: str, cause: str) -> None:
        super().__init__(
            f"Rollback of change {change_id!r} failed: {cause}",
            {"change_id": change_id, "cause": cause},
        )
        self.change_id = change_id
        self.cause = cause


class PipelineCancelledError(ChangeflowError):
    """Raised at a checkpoint when a run was asked to stop."""


# ============================================================================
# Legacy import
# ============================================================================


class LegacyImportError(ChangeflowError):
    """Raised when legacy audit records cannot be translated or written."""
