"""
Changeflow: Integration Tests for the PostgreSQL Stack

Requires a PostgreSQL instance configured via AUDIT_DB_* with the
alembic migrations applied (``alembic upgrade head``). Covers:
- Atomic change + audit write through a shared connection
- Idempotent re-run against the audit table
- Lock exclusion and fencing through ``pipeline_locks``
"""

from __future__ import annotations

import pytest

from changeflow import RunOptions, Stage, run_pipeline
from changeflow.audit.models import ChangeState
from changeflow.audit.postgres import PostgresAuditStore
from changeflow.core.config import LockConfig, get_config
from changeflow.core.database import DatabaseManager
from changeflow.core.errors import LockBusyError
from changeflow.core.ids import generate_uuid
from changeflow.lock.postgres import PostgresLockService
from changeflow.pipeline.definition import ChangeUnit, build_definition
from changeflow.targets.postgres import PostgresTargetSystem
from changeflow.targets.registry import TargetSystemRegistry


@pytest.mark.integration
class TestPostgresPipeline:
    def _db(self) -> DatabaseManager:
        return DatabaseManager(get_config())

    def test_transactional_change_and_rerun(self) -> None:
        db = self._db()
        suffix = generate_uuid().replace("-", "")[:12]
        table = f"cf_it_{suffix}"
        change_id = f"create-{table}"

        def _create(cursor) -> None:
            cursor.execute(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY)")

        def _drop(cursor) -> None:
            cursor.execute(f"DROP TABLE IF EXISTS {table}")

        definition = build_definition(
            [
                Stage(
                    f"it-{suffix}",
                    (
                        ChangeUnit(
                            change_id,
                            1,
                            "pg",
                            execute=_create,
                            checksum=suffix,
                            transactional=True,
                            rollback=_drop,
                        ),
                    ),
                )
            ]
        )
        store = PostgresAuditStore(db)
        lock = PostgresLockService(db, LockConfig(key=f"it-{suffix}", acquire_timeout_seconds=0))
        registry = TargetSystemRegistry([PostgresTargetSystem("pg", db)])

        try:
            first = run_pipeline(definition, audit_store=store, lock_service=lock, registry=registry)
            second = run_pipeline(definition, audit_store=store, lock_service=lock, registry=registry)

            assert first.executed == [change_id]
            assert second.ignored == [change_id]
            assert [e.state for e in store.history(change_id)] == [ChangeState.EXECUTED]
            assert first.fencing_token < second.fencing_token
        finally:
            with db.get_audit_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(f"DROP TABLE IF EXISTS {table}")
                    conn.commit()
                finally:
                    cursor.close()
            db.close_all()

    def test_lock_excludes_second_owner(self) -> None:
        db = self._db()
        config = LockConfig(key=f"it-lock-{generate_uuid()}", lease_seconds=30)
        lock = PostgresLockService(db, config)

        try:
            lease = lock.acquire("owner-a", timeout=0)
            assert lock.is_current(lease)

            with pytest.raises(LockBusyError):
                lock.acquire("owner-b", timeout=0)

            renewed = lock.renew(lease)
            assert renewed.fencing_token == lease.fencing_token

            lock.release(renewed)
            takeover = lock.acquire("owner-b", timeout=0)
            assert takeover.fencing_token > lease.fencing_token
            assert not lock.is_current(renewed)
            lock.release(takeover)
        finally:
            db.close_all()

    def test_busy_lock_fails_run_fast(self) -> None:
        db = self._db()
        config = LockConfig(key=f"it-busy-{generate_uuid()}")
        lock = PostgresLockService(db, config)
        holder = lock.acquire("someone-else", timeout=0)

        try:
            result = run_pipeline(
                build_definition([]),
                RunOptions(lock_timeout_seconds=0),
                audit_store=PostgresAuditStore(db),
                lock_service=lock,
                registry=TargetSystemRegistry(),
            )
            assert isinstance(result.error, LockBusyError)
        finally:
            lock.release(holder)
            db.close_all()
