"""
Changeflow: Legacy Audit Importer

This module migrates a legacy change log into the current audit store
once, before the first pipeline run that asks for it.

Key responsibilities:
- Translate legacy records into audit entries, keeping original
  timestamps, change ids and execution ids
- Never overwrite history already present in the current store
- Write an import marker so that later invocations are no-ops

External dependencies:
- None beyond the audit store

Database tables accessed:
- ``audit_entries`` and ``audit_import_markers`` via :class:`AuditStore`

Thread safety: Not thread-safe; run while holding the pipeline lock.

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

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

from changeflow.audit.retry import RetryPolicy, call_with_retry
from changeflow.audit.store import AuditStore
from changeflow.core.logging import get_logger
from changeflow.legacy.models import LegacyRecord
from changeflow.legacy.sources import LegacySource

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.pipeline.definition import PipelineDefinition

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

LEGACY_STAGE = "legacy"


@dataclass
class ImportResult:
    """Outcome of :meth:`LegacyImporter.import_if_needed`.

    Attributes:
        source_id: Legacy source identifier (the marker key).
        performed: Whether an import ran in this invocation.
        imported: Number of audit entries written.
        skipped: Legacy records not importable (pre-execution markers,
            system changes) or already imported.
        conflicts: Change ids whose legacy records were dropped because
            the current store already had entries for them.
        reason: Why the import did not run, when ``performed`` is False.
    """

    source_id: str
    performed: bool
    imported: int = 0
    skipped: int = 0
    conflicts: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "performed": self.performed,
            "imported": self.imported,
            "skipped": self.skipped,
            "conflicts": list(self.conflicts),
            "reason": self.reason,
        }


class LegacyImporter:
    """One-shot migration of legacy audit history."""

    def __init__(self, audit_store: AuditStore, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.audit_store = audit_store
        self.retry_policy = retry_policy or RetryPolicy()

    def _with_retry(self, fn, operation: str):
        return call_with_retry(fn, self.retry_policy, operation=operation)

    def import_if_needed(
        self,
        source: LegacySource,
        definition: Optional["PipelineDefinition"] = None,
    ) -> ImportResult:
        """Import ``source`` unless its marker already exists.

        Args:
            source: Legacy change log.
            definition: Optional pipeline definition; when given, imported
                entries adopt its stage names and checksums so that
                executed legacy changes are recognised as applied.

        Raises:
            LegacyImportError: If a record cannot be read or translated.
            AuditWriteError: If the audit store is unavailable.
        """

        source_id = source.source_id
        if self._with_retry(lambda: self.audit_store.has_import_marker(source_id), "import marker check"):
            logger.debug("Legacy import from %s already completed", source_id)
            return ImportResult(source_id, performed=False, reason="already imported")

        records = source.read_records()
        if not records:
            logger.info("No legacy records found in %s", source_id)
            return ImportResult(source_id, performed=False, reason="no legacy records")

        existing = self._with_retry(self.audit_store.all_entries, "read audit entries")
        already_imported: Set[str] = set()
        current_ids: Set[str] = set()
        for entry in existing:
            if entry.metadata.get("legacy_source") == source_id:
                already_imported.add(str(entry.metadata.get("legacy_execution_id")))
            else:
                current_ids.add(entry.change_id)

        units = {}
        if definition is not None:
            units = {unit.change_id: (stage, unit) for stage, unit in definition.iter_stage_units()}

        result = ImportResult(source_id, performed=True)
        conflicts: Set[str] = set()
        ordered = sorted(enumerate(records), key=lambda item: (item[1].timestamp, item[0]))
        for _, record in ordered:
            if not record.importable:
                result.skipped += 1
                continue
            if record.change_id in current_ids:
                conflicts.add(record.change_id)
                continue
            if record.execution_id and record.execution_id in already_imported:
                result.skipped += 1
                continue

            entry = self._translate(record, source_id, units)
            self._with_retry(lambda: self.audit_store.append(entry), f"import {record.change_id}")
            result.imported += 1

        result.conflicts = sorted(conflicts)
        self._with_retry(
            lambda: self.audit_store.record_import_marker(source_id, result.imported),
            "record import marker",
        )

        if conflicts:
            logger.warning(
                "Legacy import from %s kept current entries for %d change(s): %s",
                source_id,
                len(conflicts),
                ", ".join(result.conflicts),
            )
        logger.info(
            "Legacy import from %s completed: imported=%d skipped=%d conflicts=%d",
            source_id,
            result.imported,
            result.skipped,
            len(conflicts),
        )
        return result

    @staticmethod
    def _translate(record: LegacyRecord, source_id: str, units: Dict[str, Any]):
        stage_name = record.change_log_class or LEGACY_STAGE
        checksum = ""
        if record.change_id in units:
            stage, unit = units[record.change_id]
            stage_name = stage.name
            checksum = unit.checksum
        return record.to_audit_entry(source_id, stage=stage_name, checksum=checksum)
