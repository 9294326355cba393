"""
Changeflow: Tests for Target System Adapters

Test suite for ``changeflow.targets``. Covers:
- Execution outcomes for succeeding and failing change callables
- In-memory transactional semantics (commit, rollback, deferred actions)
- Registry lookups and validation
"""

from __future__ import annotations

import pytest

from changeflow.core.errors import TargetSystemNotFoundError
from changeflow.pipeline.definition import ChangeUnit, Stage, build_definition
from changeflow.targets.base import ExecutionOutcome, TransactionContext, invoke_change
from changeflow.targets.default import DefaultTargetSystem
from changeflow.targets.memory import InMemoryTargetSystem
from changeflow.targets.registry import TargetSystemRegistry


def _set(key):
    def _apply(handle):
        handle[key] = True
        return key

    return _apply


def _explode(handle):
    handle["partial"] = True
    raise ValueError("boom")


def _unit(execute, rollback=None, target="mem") -> ChangeUnit:
    return ChangeUnit("c1", 1, target, execute=execute, rollback=rollback)


class TestInvokeChange:
    def test_success_carries_value(self) -> None:
        outcome = invoke_change(lambda handle: handle * 2, 21)

        assert outcome == ExecutionOutcome.ok(42)
        assert outcome.value == 42

    def test_exception_becomes_failed_outcome(self) -> None:
        outcome = invoke_change(_explode, {})

        assert not outcome.success
        assert outcome.error == "ValueError: boom"
        assert isinstance(outcome.exception, ValueError)


class TestDefaultTargetSystem:
    def test_passes_resource_to_change(self) -> None:
        resource = {}
        target = DefaultTargetSystem("http", resource)

        outcome = target.execute(_unit(_set("done"), target="http"))

        assert outcome.success
        assert resource == {"done": True}
        assert not target.is_transactional()
        assert target.descriptor.transactional is False

    def test_rollback_requires_declared_operation(self) -> None:
        target = DefaultTargetSystem("http", {})

        outcome = target.rollback(_unit(_set("done"), target="http"))

        assert not outcome.success
        assert "declares no rollback" in outcome.error

    def test_not_transactional(self) -> None:
        with pytest.raises(NotImplementedError):
            DefaultTargetSystem("http").run_in_transaction(lambda tx: None)


class TestInMemoryTargetSystem:
    def test_commit_applies_staged_state(self) -> None:
        target = InMemoryTargetSystem("mem", {"existing": 1})

        target.run_in_transaction(lambda tx: target.execute(_unit(_set("new")), tx))

        assert target.snapshot() == {"existing": 1, "new": True}
        assert target.commits == 1

    def test_exception_discards_staged_state(self) -> None:
        target = InMemoryTargetSystem("mem")

        def _work(tx):
            tx.handle["partial"] = True
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            target.run_in_transaction(_work)

        assert target.snapshot() == {}
        assert target.rollbacks == 1

    def test_execute_without_transaction_is_atomic(self) -> None:
        target = InMemoryTargetSystem("mem")

        outcome = target.execute(_unit(_explode))

        assert not outcome.success
        assert outcome.error == "ValueError: boom"
        assert target.snapshot() == {}

        assert target.execute(_unit(_set("ok"))).success
        assert target.snapshot() == {"ok": True}

    def test_failing_deferred_action_rolls_back(self) -> None:
        target = InMemoryTargetSystem("mem")

        def _work(tx):
            target.execute(_unit(_set("change")), tx)

            def _fail():
                raise IOError("audit unavailable")

            tx.defer(_fail)

        with pytest.raises(IOError):
            target.run_in_transaction(_work)
        assert target.snapshot() == {}

    def test_deferred_actions_run_in_order(self) -> None:
        calls = []
        tx = TransactionContext("mem")
        tx.defer(lambda: calls.append(1))
        tx.defer(lambda: calls.append(2))

        tx.flush_deferred()
        tx.flush_deferred()

        assert calls == [1, 2]

    def test_rollback_operation(self) -> None:
        target = InMemoryTargetSystem("mem", {"c1": True})

        def _undo(handle):
            handle.pop("c1")

        assert target.rollback(_unit(_set("c1"), rollback=_undo)).success
        assert target.snapshot() == {}


class TestTargetSystemRegistry:
    def test_lookup(self) -> None:
        mem = InMemoryTargetSystem("mem")
        registry = TargetSystemRegistry([mem, DefaultTargetSystem("http")])

        assert registry.get("mem") is mem
        assert registry.describe("mem").transactional is True
        assert registry.names() == ["http", "mem"]
        assert "http" in registry
        assert len(registry) == 2

    def test_unknown_target(self) -> None:
        with pytest.raises(TargetSystemNotFoundError) as excinfo:
            TargetSystemRegistry().get("kafka")
        assert excinfo.value.target_system == "kafka"

    def test_duplicate_registration(self) -> None:
        registry = TargetSystemRegistry([DefaultTargetSystem("http")])

        with pytest.raises(ValueError):
            registry.register(DefaultTargetSystem("http"))

    def test_validate_definition(self) -> None:
        registry = TargetSystemRegistry([DefaultTargetSystem("http")])
        definition = build_definition(
            [
                Stage(
                    "s",
                    (
                        ChangeUnit("a", 1, "http", execute=_set("a")),
                        ChangeUnit("b", 2, "kafka", execute=_set("b")),
                    ),
                )
            ]
        )

        with pytest.raises(TargetSystemNotFoundError, match="kafka"):
            registry.validate(definition)
