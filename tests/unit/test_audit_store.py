"""
Changeflow: Tests for the Audit Store

Test suite for ``changeflow.audit``. Covers:
- Append-only history and "latest entry" resolution with timestamp ties
- Deferred appends inside target system transactions
- Import markers
- Retry of transient store failures
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.audit.retry import RetryPolicy, calculate_retry_delay, call_with_retry
from changeflow.audit.store import InMemoryAuditStore, latest_by_change
from changeflow.core.errors import AuditWriteError
from changeflow.targets.base import TransactionContext


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(change_id: str, state: ChangeState, seconds: int = 0, checksum: str = "sum") -> AuditEntry:
    return AuditEntry(
        change_id=change_id,
        stage="init",
        state=state,
        author="alice",
        checksum=checksum,
        timestamp=T0 + timedelta(seconds=seconds),
    )


class TestInMemoryAuditStore:
    def test_append_assigns_increasing_sequence(self) -> None:
        store = InMemoryAuditStore()

        first = store.append(_entry("a", ChangeState.PENDING))
        second = store.append(_entry("b", ChangeState.PENDING))

        assert first.sequence is not None
        assert second.sequence > first.sequence

    def test_latest_entry_prefers_newer_timestamp(self) -> None:
        store = InMemoryAuditStore()
        store.append(_entry("a", ChangeState.EXECUTED, seconds=10))
        store.append(_entry("a", ChangeState.PENDING, seconds=5))

        assert store.latest_entry("a").state is ChangeState.EXECUTED

    def test_timestamp_tie_resolved_by_insertion_order(self) -> None:
        store = InMemoryAuditStore()
        store.append(_entry("a", ChangeState.PENDING))
        store.append(_entry("a", ChangeState.EXECUTED))

        assert store.latest_entry("a").state is ChangeState.EXECUTED
        assert [e.state for e in store.history("a")] == [ChangeState.PENDING, ChangeState.EXECUTED]

    def test_history_is_never_rewritten(self) -> None:
        store = InMemoryAuditStore()
        store.append(_entry("a", ChangeState.PENDING))
        store.append(_entry("a", ChangeState.FAILED, seconds=1))
        store.append(_entry("a", ChangeState.ROLLED_BACK, seconds=2))

        assert len(store.history("a")) == 3
        assert len(store.all_entries()) == 3

    def test_all_latest_entries(self) -> None:
        store = InMemoryAuditStore()
        store.append(_entry("a", ChangeState.PENDING, seconds=0))
        store.append(_entry("b", ChangeState.EXECUTED, seconds=1))
        store.append(_entry("a", ChangeState.EXECUTED, seconds=2))

        latest = store.all_latest_entries()

        assert [(e.change_id, e.state) for e in latest] == [
            ("b", ChangeState.EXECUTED),
            ("a", ChangeState.EXECUTED),
        ]

    def test_unknown_change(self) -> None:
        store = InMemoryAuditStore()

        assert store.latest_entry("missing") is None
        assert store.history("missing") == []

    def test_append_inside_transaction_is_deferred(self) -> None:
        store = InMemoryAuditStore()
        tx = TransactionContext(target_system="sql")

        store.append(_entry("a", ChangeState.EXECUTED), transaction=tx)
        assert store.latest_entry("a") is None

        tx.flush_deferred()
        assert store.latest_entry("a").state is ChangeState.EXECUTED

    def test_import_markers(self) -> None:
        store = InMemoryAuditStore()

        assert not store.has_import_marker("memory:legacy")
        store.record_import_marker("memory:legacy", 4)
        assert store.has_import_marker("memory:legacy")

    def test_latest_by_change(self) -> None:
        entries = [
            _entry("a", ChangeState.PENDING).with_sequence(1),
            _entry("a", ChangeState.EXECUTED).with_sequence(2),
            _entry("b", ChangeState.FAILED).with_sequence(3),
        ]

        latest = latest_by_change(entries)

        assert latest["a"].state is ChangeState.EXECUTED
        assert latest["b"].state is ChangeState.FAILED

    def test_entry_to_dict_uses_logical_field_names(self) -> None:
        payload = _entry("a", ChangeState.EXECUTED).to_dict()

        assert payload["changeId"] == "a"
        assert payload["state"] == "EXECUTED"
        assert payload["durationMillis"] == 0
        assert payload["timestamp"] == T0.isoformat()


class TestRetry:
    def _policy(self, sleeps):
        return RetryPolicy(max_attempts=3, base_delay_seconds=0.1, sleep=sleeps.append)

    def test_transient_failures_are_retried(self) -> None:
        sleeps = []
        attempts = []

        def _flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise AuditWriteError("timeout")
            return "ok"

        assert call_with_retry(_flaky, self._policy(sleeps), operation="append") == "ok"
        assert len(attempts) == 3
        assert len(sleeps) == 2

    def test_permanent_failure_is_not_retried(self) -> None:
        sleeps = []
        attempts = []

        def _broken():
            attempts.append(1)
            raise AuditWriteError("constraint violated", transient=False)

        with pytest.raises(AuditWriteError):
            call_with_retry(_broken, self._policy(sleeps), operation="append")
        assert len(attempts) == 1
        assert sleeps == []

    def test_exhausted_attempts_raise_last_error(self) -> None:
        sleeps = []

        def _down():
            raise AuditWriteError("connection refused")

        with pytest.raises(AuditWriteError, match="connection refused"):
            call_with_retry(_down, self._policy(sleeps), operation="append")
        assert len(sleeps) == 2

    def test_other_errors_propagate_immediately(self) -> None:
        sleeps = []

        def _bug():
            raise KeyError("x")

        with pytest.raises(KeyError):
            call_with_retry(_bug, self._policy(sleeps), operation="append")
        assert sleeps == []

    def test_retry_delay_grows_with_jitter(self) -> None:
        for attempt, expected in ((1, 1.0), (2, 2.0), (3, 4.0)):
            delay = calculate_retry_delay(1.0, attempt)
            assert expected * 0.75 <= delay <= expected * 1.25
