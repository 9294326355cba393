"""Changeflow – Legacy (Mongock-style) change log records.

Legacy change logs store one document or row per execution attempt::

    executionId, changeId, author, timestamp, state, type,
    changeLogClass, changeSetMethod, executionMillis,
    executionHostname, errorTrace, systemChange

Records carry no content checksum.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.core.errors import LegacyImportError


class LegacyState(str, Enum):
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    IGNORED = "IGNORED"


class LegacyEntryType(str, Enum):
    EXECUTION = "EXECUTION"
    BEFORE_EXECUTION = "BEFORE_EXECUTION"


_STATE_MAPPING = {
    LegacyState.EXECUTED: ChangeState.EXECUTED,
    LegacyState.FAILED: ChangeState.FAILED,
    LegacyState.ROLLBACK_FAILED: ChangeState.FAILED,
    LegacyState.ROLLED_BACK: ChangeState.ROLLED_BACK,
    LegacyState.IGNORED: ChangeState.IGNORED,
}

# Accepted spellings per field: snake_case column, then camelCase document key.
_FIELD_ALIASES = {
    "execution_id": ("execution_id", "executionId"),
    "change_id": ("change_id", "changeId"),
    "author": ("author",),
    "timestamp": ("timestamp",),
    "state": ("state",),
    "type": ("type",),
    "change_log_class": ("change_log_class", "changeLogClass"),
    "change_set_method": ("change_set_method", "changeSetMethod"),
    "execution_millis": ("execution_millis", "executionMillis"),
    "execution_hostname": ("execution_hostname", "executionHostname"),
    "error_trace": ("error_trace", "errorTrace"),
    "system_change": ("system_change", "systemChange"),
}


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES[name]:
        if key in data:
            return data[key]
    return None


def _as_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as written by the legacy drivers.
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp {value!r}")


@dataclass(frozen=True)
class LegacyRecord:
    """One legacy change log entry."""

    execution_id: str
    change_id: str
    author: str
    timestamp: datetime
    state: LegacyState
    type: LegacyEntryType = LegacyEntryType.EXECUTION
    change_log_class: Optional[str] = None
    change_set_method: Optional[str] = None
    execution_millis: int = 0
    execution_hostname: Optional[str] = None
    error_trace: Optional[Any] = None
    system_change: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LegacyRecord":
        """Parse a legacy row or document.

        Raises:
            LegacyImportError: If a required field is missing or malformed.
        """

        change_id = _lookup(data, "change_id")
        if not change_id:
            raise LegacyImportError("Legacy record without change id", {"record": dict(data)})

        try:
            timestamp = _as_utc(_lookup(data, "timestamp"))
            state = LegacyState(str(_lookup(data, "state")))
            entry_type = LegacyEntryType(str(_lookup(data, "type") or "EXECUTION"))
        except ValueError as exc:
            raise LegacyImportError(
                f"Cannot translate legacy record for {change_id!r}: {exc}",
                {"change_id": change_id},
            ) from exc

        execution_id = _lookup(data, "execution_id") or ""
        return cls(
            execution_id=str(execution_id),
            change_id=str(change_id),
            author=str(_lookup(data, "author") or ""),
            timestamp=timestamp,
            state=state,
            type=entry_type,
            change_log_class=_lookup(data, "change_log_class"),
            change_set_method=_lookup(data, "change_set_method"),
            execution_millis=int(_lookup(data, "execution_millis") or 0),
            execution_hostname=_lookup(data, "execution_hostname"),
            error_trace=_lookup(data, "error_trace"),
            system_change=bool(_lookup(data, "system_change") or False),
        )

    @property
    def importable(self) -> bool:
        """False for pre-execution markers and the legacy tool's own changes."""

        return self.type is LegacyEntryType.EXECUTION and not self.system_change

    def to_audit_entry(self, source_id: str, stage: str, checksum: str = "") -> AuditEntry:
        """Translate into a current audit entry keeping timestamp and ids."""

        error = None
        if self.error_trace:
            error = {"type": "LegacyError", "message": str(self.error_trace)}

        metadata = {
            "legacy_source": source_id,
            "legacy_execution_id": self.execution_id,
            "legacy_state": self.state.value,
        }
        if self.change_log_class:
            metadata["change_log_class"] = self.change_log_class
        if self.change_set_method:
            metadata["change_set_method"] = self.change_set_method
        if self.execution_hostname:
            metadata["execution_hostname"] = self.execution_hostname

        return AuditEntry(
            change_id=self.change_id,
            stage=stage,
            state=_STATE_MAPPING[self.state],
            author=self.author,
            checksum=checksum,
            timestamp=self.timestamp,
            duration_millis=self.execution_millis,
            error=error,
            run_id=self.execution_id or None,
            metadata=metadata,
        )
