"""Changeflow – Run a pipeline definition against PostgreSQL.

This script is the composition root for running changes from the
command line. It wires the PostgreSQL audit store and lock to a static
target registry and runs a definition artifact::

    python -m changeflow.scripts.run_changes \
        --definition pipelines/release_42.yaml \
        --postgres-target app_db \
        --target schema_registry

Target systems are registered explicitly: ``--postgres-target`` adds a
transactional adapter sharing the audit database, ``--target`` adds a
non-transactional adapter, and ``--registry module:function`` delegates
to an application factory returning a :class:`TargetSystemRegistry`.

The process exits with status 0 when every change unit ended EXECUTED,
IGNORED or ROLLED_BACK, and 1 otherwise.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

from changeflow.audit.postgres import PostgresAuditStore
from changeflow.audit.retry import RetryPolicy
from changeflow.core.config import get_config
from changeflow.core.database import get_db_manager
from changeflow.core.errors import ChangeflowError
from changeflow.core.logging import get_logger
from changeflow.legacy.sources import PostgresLegacySource
from changeflow.lock.postgres import PostgresLockService
from changeflow.pipeline.definition import load_definition, resolve_callable
from changeflow.pipeline.executor import FailurePolicy, RunOptions
from changeflow.pipeline.runner import run_pipeline
from changeflow.targets.default import DefaultTargetSystem
from changeflow.targets.postgres import PostgresTargetSystem
from changeflow.targets.registry import TargetSystemRegistry


logger = get_logger(__name__)


def build_registry(
    registry_ref: Optional[str],
    postgres_targets: List[str],
    plain_targets: List[str],
    db_manager,
) -> TargetSystemRegistry:
    if registry_ref:
        factory = resolve_callable(registry_ref)
        registry = factory()
        if not isinstance(registry, TargetSystemRegistry):
            raise ChangeflowError(f"{registry_ref} did not return a TargetSystemRegistry")
    else:
        registry = TargetSystemRegistry()

    for name in postgres_targets:
        registry.register(PostgresTargetSystem(name, db_manager))
    for name in plain_targets:
        registry.register(DefaultTargetSystem(name))
    return registry


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Changeflow pipeline runner")

    parser.add_argument(
        "--definition",
        type=Path,
        required=True,
        help="Pipeline definition artifact (YAML or JSON)",
    )
    parser.add_argument(
        "--lock-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the pipeline lock (0 fails fast; default from LOCK_ACQUIRE_TIMEOUT_SECONDS)",
    )
    parser.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Override the concurrency limit of BOUNDED_PARALLEL stages",
    )
    parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Continue past failed non-transactional changes",
    )
    parser.add_argument(
        "--no-auto-rollback",
        action="store_true",
        help="Do not invoke rollbacks of failed non-transactional changes",
    )
    parser.add_argument(
        "--legacy-table",
        type=str,
        default=None,
        help="Import legacy audit history from this table before running",
    )
    parser.add_argument(
        "--registry",
        type=str,
        default=None,
        help="module:function returning the TargetSystemRegistry",
    )
    parser.add_argument(
        "--postgres-target",
        action="append",
        default=[],
        help="Register a transactional PostgreSQL target sharing the audit DB",
    )
    parser.add_argument(
        "--target",
        action="append",
        default=[],
        help="Register a non-transactional target",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the pipeline result as JSON",
    )

    args = parser.parse_args(argv)

    if args.parallelism is not None and args.parallelism < 1:
        parser.error("--parallelism must be at least 1")

    config = get_config()
    db_manager = get_db_manager()

    try:
        definition = load_definition(args.definition)
        registry = build_registry(args.registry, args.postgres_target, args.target, db_manager)
    except ChangeflowError as exc:
        logger.error("Cannot prepare run: %s", exc)
        return 2

    options = RunOptions.from_config(
        config,
        parallelism=args.parallelism,
        failure_policy=(
            FailurePolicy.CONTINUE_ON_NON_TRANSACTIONAL_FAILURE
            if args.continue_on_failure
            else FailurePolicy.FAIL_FAST
        ),
        run_legacy_import=args.legacy_table is not None,
        auto_rollback=not args.no_auto_rollback,
    )
    if args.lock_timeout is not None:
        options.lock_timeout_seconds = args.lock_timeout

    legacy_source = (
        PostgresLegacySource(db_manager, args.legacy_table) if args.legacy_table else None
    )

    try:
        result = run_pipeline(
            definition,
            options,
            audit_store=PostgresAuditStore(db_manager),
            lock_service=PostgresLockService(db_manager, config.lock),
            registry=registry,
            legacy_source=legacy_source,
            retry_policy=RetryPolicy(
                max_attempts=config.audit_write_max_attempts,
                base_delay_seconds=config.audit_write_backoff_seconds,
            ),
        )
    finally:
        db_manager.close_all()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        for change in result.changes:
            print(f"{change.stage:<20} {change.change_id:<40} {change.state.value}")
        if result.error is not None:
            print(f"error: {result.error}")

    return 0 if result.success else 1


if __name__ == "__main__":  # pragma: no cover - manual CLI entry
    raise SystemExit(main())
