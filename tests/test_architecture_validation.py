"""
Architecture Validation Tests

These tests validate that:
1. The public entry points exist with the expected signatures
2. The executor calls the lock, the audit store and the target system in
   the correct order
3. Planning failures stop a run before any side effect

Uses mocks to test the call chain without real backends.
"""

import inspect
from datetime import timedelta
from unittest.mock import Mock

from changeflow import PipelineExecutor, Stage, run_pipeline
from changeflow.audit.models import AuditEntry, ChangeState, utcnow
from changeflow.audit.store import AuditStore
from changeflow.core.errors import ChecksumDriftError
from changeflow.lock.lease import Lease, LockService
from changeflow.pipeline.definition import ChangeUnit, build_definition
from changeflow.targets.default import DefaultTargetSystem
from changeflow.targets.registry import TargetSystemRegistry


def _collaborators(latest_entries=()):
    now = utcnow()
    manager = Mock()

    lock = Mock(spec=LockService)
    lock.acquire.return_value = Lease("pipeline", "instance-a", now, now + timedelta(seconds=60), 7)

    store = Mock(spec=AuditStore)
    store.all_latest_entries.return_value = list(latest_entries)
    store.append.side_effect = lambda entry, transaction=None: entry

    manager.attach_mock(lock, "lock")
    manager.attach_mock(store, "store")
    return manager, lock, store


def _call_names(manager):
    return [name for name, _, _ in manager.mock_calls]


class TestPublicInterfaces:
    def test_run_pipeline_signature(self):
        params = inspect.signature(run_pipeline).parameters

        assert list(params)[:2] == ["definition", "options"]
        for name in ("audit_store", "lock_service", "registry", "legacy_source"):
            assert params[name].kind is inspect.Parameter.KEYWORD_ONLY

    def test_audit_store_contract(self):
        assert AuditStore.__abstractmethods__ == {
            "append",
            "latest_entry",
            "all_latest_entries",
            "history",
            "all_entries",
            "has_import_marker",
            "record_import_marker",
        }


class TestExecutorCallChain:
    """Test that the executor talks to its collaborators in the correct order."""

    def test_non_transactional_change_call_order(self):
        """
        Validates the marker protocol for one change:
        acquire -> read latest -> checkpoint -> PENDING -> execute ->
        fencing check -> EXECUTED -> release
        """

        manager, lock, store = _collaborators()
        unit = ChangeUnit("c1", 1, "api", execute=manager.change, checksum="abc")
        registry = TargetSystemRegistry([DefaultTargetSystem("api", resource="client")])
        executor = PipelineExecutor(store, lock, registry, owner="instance-a", renew_interval_seconds=60)

        result = executor.run(build_definition([Stage("s", (unit,))]))

        assert result.success
        assert _call_names(manager) == [
            "lock.acquire",
            "store.all_latest_entries",
            "lock.ensure_current",
            "store.append",
            "change",
            "lock.ensure_current",
            "store.append",
            "lock.release",
        ]
        manager.change.assert_called_once_with("client")

        written = [call.args[0].state for call in store.append.call_args_list]
        assert written == [ChangeState.PENDING, ChangeState.EXECUTED]
        assert all(call.args[0].metadata["fencing_token"] == 7 for call in store.append.call_args_list)

    def test_drift_stops_before_side_effects(self):
        applied = AuditEntry("c1", "s", ChangeState.EXECUTED, "alice", "old", utcnow(), sequence=1)
        manager, lock, store = _collaborators([applied])
        unit = ChangeUnit("c1", 1, "api", execute=manager.change, checksum="new")
        registry = TargetSystemRegistry([DefaultTargetSystem("api")])
        executor = PipelineExecutor(store, lock, registry, owner="instance-a", renew_interval_seconds=60)

        result = executor.run(build_definition([Stage("s", (unit,))]))

        assert isinstance(result.error, ChecksumDriftError)
        assert _call_names(manager) == ["lock.acquire", "store.all_latest_entries", "lock.release"]
        manager.change.assert_not_called()
