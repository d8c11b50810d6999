#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.reconcile.types import ResourceRecord, ResourceStatus, parse_kind  # noqa: E402
from src.storage.sqlite_store import SQLiteStore, StoreError  # noqa: E402


_TARGETS = {
    "start": ResourceStatus.STARTING,
    "stop": ResourceStatus.STOPPING,
    "delete": ResourceStatus.TERMINATING,
}


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Request a start/stop/delete for a project or a single resource.")
    p.add_argument("action", choices=sorted(_TARGETS), help="Desired transition.")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--project-id", default="", help="Apply to every resource of the project.")
    target.add_argument("--resource-id", default="", help="Apply to one resource (requires --kind).")
    p.add_argument("--kind", default="", help="Resource kind for --resource-id (sandbox|database).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env DEVENV_SQLITE_PATH or data/devenv.db).")
    p.add_argument("--reason", default="cli_request", help="Optional reason to record.")
    return p.parse_args(argv)


def _request(store: SQLiteStore, args: argparse.Namespace, target: ResourceStatus) -> list[ResourceRecord]:
    if args.project_id:
        return store.request_project_transition(str(args.project_id), target, reason=str(args.reason))
    if not args.kind:
        raise ValueError("--kind is required with --resource-id")
    return [store.request_transition(parse_kind(args.kind), str(args.resource_id), target, reason=str(args.reason))]


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    target = _TARGETS[args.action]
    store = SQLiteStore(args.db_path or None)
    try:
        try:
            records = _request(store, args, target)
        except (StoreError, ValueError) as e:
            print(f"{type(e).__name__}: {e}", file=sys.stderr)
            return 1
        print(json.dumps([r.to_public_dict() for r in records], ensure_ascii=False, indent=2))
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
