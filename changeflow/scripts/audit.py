"""Changeflow – Audit trail inspection and operator fixes.

Usage::

    # Latest entry per change id
    python -m changeflow.scripts.audit list

    # Full history of one change
    python -m changeflow.scripts.audit list --change-id add_orders_index

    # Changes whose last attempt is PENDING or FAILED
    python -m changeflow.scripts.audit issues

    # Compare a definition artifact with the audit trail
    python -m changeflow.scripts.audit reconcile --definition pipelines/release_42.yaml

    # Record the real outcome of an unresolved change
    python -m changeflow.scripts.audit fix add_orders_index \
        --resolution EXECUTED --author alice --reason "verified index exists"

``fix`` takes the pipeline lock (failing fast) so that it never races a
running pipeline.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.audit.postgres import PostgresAuditStore
from changeflow.audit.reconcile import fix_change, list_issues, reconcile
from changeflow.core.config import get_config
from changeflow.core.database import get_db_manager
from changeflow.core.errors import ChangeflowError
from changeflow.core.ids import generate_owner_id
from changeflow.core.logging import get_logger
from changeflow.lock.postgres import PostgresLockService
from changeflow.pipeline.definition import load_definition


logger = get_logger(__name__)


def _print_entries(entries: List[AuditEntry], as_json: bool) -> None:
    if as_json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2, default=str))
        return
    if not entries:
        print("(no entries)")
        return
    for entry in entries:
        print(
            f"{entry.timestamp.isoformat():<32} {entry.stage:<16} "
            f"{entry.change_id:<40} {entry.state.value:<12} {entry.author}"
        )


def cmd_list(store: PostgresAuditStore, change_id: Optional[str], as_json: bool) -> None:
    entries = store.history(change_id) if change_id else store.all_latest_entries()
    _print_entries(entries, as_json)


def cmd_issues(store: PostgresAuditStore, as_json: bool) -> int:
    issues = list_issues(store)
    _print_entries(issues, as_json)
    return 1 if issues else 0


def cmd_reconcile(store: PostgresAuditStore, definition_path: Path, as_json: bool) -> int:
    report = reconcile(load_definition(definition_path), store)
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        for unit in report.units:
            print(f"{unit.stage:<16} {unit.change_id:<40} {unit.status.value}")
        for entry in report.orphans:
            print(f"{entry.stage:<16} {entry.change_id:<40} ORPHANED")
    return 1 if report.drifted or report.needs_attention else 0


def cmd_fix(
    store: PostgresAuditStore,
    lock: PostgresLockService,
    change_id: str,
    resolution: ChangeState,
    author: str,
    checksum: Optional[str],
    reason: Optional[str],
) -> None:
    lease = lock.acquire(generate_owner_id(lock.config.service_identifier), timeout=0)
    try:
        entry = fix_change(
            store, change_id, resolution, author, checksum=checksum, reason=reason
        )
    finally:
        lock.release(lease)
    print(f"{entry.change_id} -> {entry.state.value}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Changeflow audit trail tool")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List latest entries or one change's history")
    list_parser.add_argument("--change-id", type=str, default=None)

    subparsers.add_parser("issues", help="List changes needing attention")

    reconcile_parser = subparsers.add_parser("reconcile", help="Compare a definition with the audit trail")
    reconcile_parser.add_argument("--definition", type=Path, required=True)

    fix_parser = subparsers.add_parser("fix", help="Resolve a PENDING or FAILED change")
    fix_parser.add_argument("change_id", type=str)
    fix_parser.add_argument(
        "--resolution",
        type=ChangeState,
        choices=[ChangeState.EXECUTED, ChangeState.ROLLED_BACK],
        required=True,
    )
    fix_parser.add_argument("--author", type=str, required=True)
    fix_parser.add_argument("--checksum", type=str, default=None)
    fix_parser.add_argument("--reason", type=str, default=None)

    args = parser.parse_args(argv)

    config = get_config()
    db_manager = get_db_manager()
    store = PostgresAuditStore(db_manager)

    try:
        if args.command == "list":
            cmd_list(store, args.change_id, args.json)
            return 0
        if args.command == "issues":
            return cmd_issues(store, args.json)
        if args.command == "reconcile":
            return cmd_reconcile(store, args.definition, args.json)
        cmd_fix(
            store,
            PostgresLockService(db_manager, config.lock),
            args.change_id,
            args.resolution,
            args.author,
            args.checksum,
            args.reason,
        )
        return 0
    except (ChangeflowError, ValueError) as exc:
        logger.error("audit %s failed: %s", args.command, exc)
        return 2
    finally:
        db_manager.close_all()


if __name__ == "__main__":  # pragma: no cover - manual CLI entry
    raise SystemExit(main())
