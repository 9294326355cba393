"""Shared fixtures for Changeflow unit tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

import pytest

from changeflow.audit.retry import RetryPolicy
from changeflow.audit.store import InMemoryAuditStore
from changeflow.core.config import LockConfig
from changeflow.lock.memory import InMemoryLockService
from changeflow.pipeline.definition import ChangeUnit, PipelineDefinition, Stage, build_definition
from changeflow.pipeline.executor import PipelineExecutor
from changeflow.targets.default import DefaultTargetSystem
from changeflow.targets.memory import InMemoryTargetSystem
from changeflow.targets.registry import TargetSystemRegistry


class FakeClock:
    """Manually advanced UTC clock; ``sleep`` advances it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.current += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class ChangeRecorder:
    """Builds change callables that record their invocations.

    A callable marks ``handle[name] = True`` when its handle is a dict, so
    tests can inspect what reached a target system.
    """

    def __init__(self) -> None:
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def change(
        self,
        name: str,
        fail: bool = False,
        before: Optional[Callable[[], Any]] = None,
    ) -> Callable[[Any], Any]:
        def _apply(handle: Any) -> str:
            with self._lock:
                self.calls.append(name)
            if before is not None:
                before()
            if isinstance(handle, dict):
                handle[name] = True
            if fail:
                raise RuntimeError(f"{name} failed")
            return name

        return _apply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> ChangeRecorder:
    return ChangeRecorder()


@pytest.fixture
def make_unit(recorder: ChangeRecorder) -> Callable[..., ChangeUnit]:
    """Factory: ``make_unit(change_id, order, target, checksum="", fail=False, before=None, **fields)``."""

    def _factory(
        change_id: str,
        order: int,
        target: str,
        checksum: str = "",
        **kwargs: Any,
    ) -> ChangeUnit:
        fail = kwargs.pop("fail", False)
        before = kwargs.pop("before", None)
        return ChangeUnit(
            change_id=change_id,
            order=order,
            target_system=target,
            execute=recorder.change(change_id, fail=fail, before=before),
            checksum=checksum or f"sum-{change_id}",
            **kwargs,
        )

    return _factory


@pytest.fixture
def example_definition(make_unit) -> Callable[..., PipelineDefinition]:
    """Factory for the two-stage example pipeline.

    Stage ``init`` holds non-transactional ``c1`` (checksum ``abc``) on the
    ``nosql`` target; stage ``data`` holds transactional ``c2`` (checksum
    ``def``) on the ``sql`` target. Keyword arguments customise ``c2``.
    """

    def _factory(**c2_kwargs: Any) -> PipelineDefinition:
        c1 = make_unit("c1", 1, "nosql", checksum="abc")
        c2 = make_unit("c2", 1, "sql", checksum="def", transactional=True, **c2_kwargs)
        return build_definition([Stage("init", (c1,)), Stage("data", (c2,))])

    return _factory


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def lock_config() -> LockConfig:
    return LockConfig(
        key="test-lock",
        lease_seconds=30,
        acquire_timeout_seconds=0,
        retry_interval_seconds=0.01,
        renew_interval_seconds=10,
    )


@pytest.fixture
def lock_service(lock_config: LockConfig) -> InMemoryLockService:
    return InMemoryLockService(lock_config)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, sleep=lambda _: None)


@pytest.fixture
def sql_target() -> InMemoryTargetSystem:
    return InMemoryTargetSystem("sql")


@pytest.fixture
def nosql_target() -> DefaultTargetSystem:
    return DefaultTargetSystem("nosql", resource={})


@pytest.fixture
def registry(sql_target: InMemoryTargetSystem, nosql_target: DefaultTargetSystem) -> TargetSystemRegistry:
    return TargetSystemRegistry([sql_target, nosql_target])


@pytest.fixture
def make_executor(audit_store, lock_service, registry, retry_policy) -> Callable[..., PipelineExecutor]:
    """Factory for executors sharing the store, lock and registry fixtures."""

    def _factory(owner: str = "instance-a", **kwargs: Any) -> PipelineExecutor:
        kwargs.setdefault("retry_policy", retry_policy)
        return PipelineExecutor(
            kwargs.pop("audit_store", audit_store),
            kwargs.pop("lock_service", lock_service),
            kwargs.pop("registry", registry),
            owner=owner,
            **kwargs,
        )

    return _factory


@pytest.fixture
def executor(make_executor) -> PipelineExecutor:
    return make_executor()
