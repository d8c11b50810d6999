from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

from src.cluster.factory import build_backend
from src.config.load_config import ConfigError, default_config_path, load_app_config
from src.runtime.scheduler import ReconcileScheduler
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger("devenv.reconcile")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the dev-environment reconciler against a SQLite store.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env DEVENV_SQLITE_PATH or data/devenv.db).",
    )
    parser.add_argument(
        "--config",
        default="",
        help="Config TOML (default: env DEVENV_CONFIG_PATH or config/default.toml).",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single tick per resource kind and exit.")
    mode.add_argument(
        "--until-idle",
        action="store_true",
        help="Tick until no row is claimable, print project statuses and exit.",
    )
    parser.add_argument("--max-rounds", type=int, default=50, help="Round limit for --until-idle.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("DEVENV_LOG_LEVEL", "INFO"),
        help="Logging level (default: env DEVENV_LOG_LEVEL or INFO).",
    )
    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    _configure_logging(args.log_level)

    try:
        cfg = load_app_config(Path(args.config).expanduser().resolve() if args.config else default_config_path())
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        scheduler = ReconcileScheduler.from_config(cfg, store=store, backend=build_backend(cfg.cluster))

        if args.once:
            store.reconcile_all_projects()
            results = scheduler.run_once()
            print(json.dumps([r.to_dict() for r in results], ensure_ascii=False, indent=2))
            return 0

        if args.until_idle:
            store.reconcile_all_projects()
            rounds = scheduler.run_until_idle(max_rounds=int(args.max_rounds))
            page = store.list_projects_page(user_id=None, limit=200, cursor=None, statuses=None)
            print(
                json.dumps(
                    {"rounds": rounds, "projects": {p["id"]: p["status"] for p in page["items"]}},
                    ensure_ascii=False,
                    indent=2,
                )
            )
            return 0

        scheduler.start()
        logger.info("Reconciler running against %s (Ctrl+C to stop)", store.db_path)
        try:
            while scheduler.running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            logger.info("Stopping reconciler")
        finally:
            scheduler.stop()
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
