"""
Changeflow: Tests for the Legacy Audit Importer

Test suite for ``changeflow.legacy``. Covers:
- Record parsing (snake_case rows, camelCase documents, epoch millis)
- State mapping and skipped record kinds
- Idempotence via the import marker
- Conflict handling when the current store already has history
- Import as the first step of a pipeline run
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from changeflow.audit.models import AuditEntry, ChangeState, utcnow
from changeflow.core.errors import LegacyImportError, ManualInterventionRequiredError
from changeflow.legacy.importer import LegacyImporter
from changeflow.legacy.models import LegacyEntryType, LegacyRecord
from changeflow.legacy.sources import InMemoryLegacySource
from changeflow.pipeline.executor import RunOptions


def _row(execution_id: str, change_id: str, state: str = "EXECUTED", minute: int = 0, **extra) -> dict:
    row = {
        "execution_id": execution_id,
        "change_id": change_id,
        "author": "legacy-team",
        "timestamp": datetime(2024, 5, 1, 8, minute, tzinfo=timezone.utc),
        "state": state,
        "type": "EXECUTION",
        "change_log_class": "com.example.InitChangeLog",
        "execution_millis": 42,
    }
    row.update(extra)
    return row


class TestLegacyRecord:
    def test_from_camel_case_document(self) -> None:
        record = LegacyRecord.from_mapping(
            {
                "executionId": "exec-1",
                "changeId": "c1",
                "author": "bob",
                "timestamp": 1714550400000,
                "state": "EXECUTED",
                "type": "EXECUTION",
                "changeLogClass": "Init",
                "changeSetMethod": "createIndexes",
                "executionMillis": 7,
                "executionHostname": "host-1",
                "systemChange": False,
            }
        )

        assert record.change_id == "c1"
        assert record.timestamp == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
        assert record.change_set_method == "createIndexes"
        assert record.type is LegacyEntryType.EXECUTION
        assert record.importable

    def test_iso_timestamp_without_zone_is_utc(self) -> None:
        record = LegacyRecord.from_mapping(_row("e", "c", timestamp="2024-05-01T08:00:00"))

        assert record.timestamp.tzinfo is not None

    def test_missing_change_id(self) -> None:
        with pytest.raises(LegacyImportError):
            LegacyRecord.from_mapping({"state": "EXECUTED", "timestamp": 0})

    def test_unknown_state(self) -> None:
        with pytest.raises(LegacyImportError, match="c1"):
            LegacyRecord.from_mapping(_row("e", "c1", state="EXPLODED"))

    @pytest.mark.parametrize(
        ("legacy", "current"),
        [
            ("EXECUTED", ChangeState.EXECUTED),
            ("FAILED", ChangeState.FAILED),
            ("ROLLBACK_FAILED", ChangeState.FAILED),
            ("ROLLED_BACK", ChangeState.ROLLED_BACK),
            ("IGNORED", ChangeState.IGNORED),
        ],
    )
    def test_state_mapping(self, legacy, current) -> None:
        entry = LegacyRecord.from_mapping(_row("e", "c", state=legacy)).to_audit_entry("src", "stage")

        assert entry.state is current
        assert entry.metadata["legacy_state"] == legacy

    def test_translation_keeps_provenance(self) -> None:
        record = LegacyRecord.from_mapping(_row("exec-9", "c1", error_trace="NPE at line 3"))

        entry = record.to_audit_entry("postgres:mongock_change_log", "init", checksum="abc")

        assert entry.timestamp == record.timestamp
        assert entry.run_id == "exec-9"
        assert entry.author == "legacy-team"
        assert entry.duration_millis == 42
        assert entry.checksum == "abc"
        assert entry.error == {"type": "LegacyError", "message": "NPE at line 3"}
        assert entry.metadata["legacy_execution_id"] == "exec-9"
        assert entry.metadata["legacy_source"] == "postgres:mongock_change_log"


class TestLegacyImporter:
    def test_imports_once(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource([_row("e1", "c1"), _row("e2", "c2", minute=1)])
        importer = LegacyImporter(audit_store, retry_policy)

        first = importer.import_if_needed(source)
        after_first = audit_store.all_entries()
        second = importer.import_if_needed(source)

        assert first.performed
        assert first.imported == 2
        assert not second.performed
        assert second.reason == "already imported"
        assert len(after_first) == 2
        assert audit_store.all_entries() == after_first
        assert [entry.metadata["legacy_execution_id"] for entry in after_first] == ["e1", "e2"]
        assert audit_store.has_import_marker("memory:legacy")

    def test_skips_markers_and_system_changes(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource(
            [
                _row("e1", "c1", type="BEFORE_EXECUTION"),
                _row("e2", "c1", minute=1),
                _row("e3", "mongock-internal", system_change=True),
            ]
        )

        result = LegacyImporter(audit_store, retry_policy).import_if_needed(source)

        assert result.imported == 1
        assert result.skipped == 2
        assert [e.change_id for e in audit_store.all_entries()] == ["c1"]

    def test_current_history_wins(self, audit_store, retry_policy) -> None:
        audit_store.append(AuditEntry("c1", "init", ChangeState.EXECUTED, "changeflow", "abc", utcnow()))
        source = InMemoryLegacySource([_row("e1", "c1", state="FAILED"), _row("e2", "c2")])

        result = LegacyImporter(audit_store, retry_policy).import_if_needed(source)

        assert result.conflicts == ["c1"]
        assert result.imported == 1
        assert audit_store.latest_entry("c1").state is ChangeState.EXECUTED
        assert len(audit_store.history("c1")) == 1

    def test_partial_import_is_resumed_without_duplicates(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource([_row("e1", "c1"), _row("e2", "c2", minute=1)])
        partial = LegacyRecord.from_mapping(_row("e1", "c1")).to_audit_entry(source.source_id, "init")
        audit_store.append(partial)

        result = LegacyImporter(audit_store, retry_policy).import_if_needed(source)

        assert result.imported == 1
        assert result.skipped == 1
        assert result.conflicts == []
        assert len(audit_store.history("c1")) == 1

    def test_empty_source_writes_no_marker(self, audit_store, retry_policy) -> None:
        result = LegacyImporter(audit_store, retry_policy).import_if_needed(InMemoryLegacySource([]))

        assert not result.performed
        assert result.reason == "no legacy records"
        assert not audit_store.has_import_marker("memory:legacy")

    def test_records_are_imported_in_time_order(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource(
            [_row("e2", "c1", state="EXECUTED", minute=5), _row("e1", "c1", state="FAILED", minute=1)]
        )

        LegacyImporter(audit_store, retry_policy).import_if_needed(source)

        assert [e.state for e in audit_store.history("c1")] == [ChangeState.FAILED, ChangeState.EXECUTED]
        assert audit_store.latest_entry("c1").state is ChangeState.EXECUTED

    def test_stage_falls_back_to_change_log_class(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource([_row("e1", "c1"), _row("e2", "c2", change_log_class=None)])

        LegacyImporter(audit_store, retry_policy).import_if_needed(source)

        assert audit_store.latest_entry("c1").stage == "com.example.InitChangeLog"
        assert audit_store.latest_entry("c2").stage == "legacy"

    def test_to_dict(self, audit_store, retry_policy) -> None:
        source = InMemoryLegacySource([_row("e1", "c1")], source_id="mongo:mongockChangeLog")

        payload = LegacyImporter(audit_store, retry_policy).import_if_needed(source).to_dict()

        assert payload["source_id"] == "mongo:mongockChangeLog"
        assert payload["imported"] == 1


class TestImportBeforeRun:
    def test_legacy_executed_changes_are_ignored(
        self, make_executor, example_definition, audit_store, recorder
    ) -> None:
        """Imported changes adopt the definition's checksum and are not re-run."""

        source = InMemoryLegacySource([_row("e1", "c1")])
        executor = make_executor(legacy_source=source)

        result = executor.run(example_definition(), RunOptions(run_legacy_import=True))

        assert result.success
        assert result.legacy_import.imported == 1
        assert result.ignored == ["c1"]
        assert result.executed == ["c2"]
        assert recorder.calls == ["c2"]

        imported = audit_store.history("c1")[0]
        assert imported.stage == "init"
        assert imported.checksum == "abc"

    def test_legacy_failed_change_needs_manual_intervention(
        self, make_executor, example_definition, recorder
    ) -> None:
        source = InMemoryLegacySource([_row("e1", "c1", state="ROLLBACK_FAILED")])

        result = make_executor(legacy_source=source).run(
            example_definition(), RunOptions(run_legacy_import=True)
        )

        assert isinstance(result.error, ManualInterventionRequiredError)
        assert recorder.calls == []

    def test_legacy_ignored_change_is_executed(self, make_executor, example_definition, recorder) -> None:
        source = InMemoryLegacySource([_row("e1", "c1", state="IGNORED")])

        result = make_executor(legacy_source=source).run(
            example_definition(), RunOptions(run_legacy_import=True)
        )

        assert result.executed == ["c1", "c2"]
        assert recorder.calls == ["c1", "c2"]

    def test_import_skipped_without_option(self, make_executor, example_definition, audit_store) -> None:
        source = InMemoryLegacySource([_row("e1", "c1")])

        result = make_executor(legacy_source=source).run(example_definition())

        assert result.legacy_import is None
        assert not audit_store.has_import_marker(source.source_id)
