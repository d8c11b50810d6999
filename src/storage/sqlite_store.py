from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from src.reconcile.aggregate import aggregate
from src.reconcile.state_machine import (
    REQUESTABLE_STATUSES,
    InvalidTransitionError,
    assert_transition,
    settled_status,
)
from src.reconcile.types import (
    CONNECTION_FIELDS,
    Intent,
    ProjectRecord,
    ProjectStatus,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
)
from src.utils.names import make_cluster_name, random_suffix


SCHEMA_VERSION = 2

__all__ = [
    "SCHEMA_VERSION",
    "InvalidTransitionError",
    "LeaseLostError",
    "NotFoundError",
    "ResourceBusyError",
    "SQLiteStore",
    "StoreError",
    "default_db_path",
]


class StoreError(RuntimeError):
    pass


class NotFoundError(StoreError):
    pass


class LeaseLostError(StoreError):
    """The caller's lease token no longer owns the row (expired and reclaimed)."""


class ResourceBusyError(StoreError):
    """A worker holds a live lease on the row; desired-state writes must wait."""


_TABLES: dict[ResourceKind, str] = {
    ResourceKind.SANDBOX: "sandboxes",
    ResourceKind.DATABASE: "databases",
}

_ID_PREFIX: dict[ResourceKind, str] = {
    ResourceKind.SANDBOX: "sbx",
    ResourceKind.DATABASE: "db",
}

_DEFAULT_NAMES: dict[ResourceKind, str] = {
    ResourceKind.SANDBOX: "dev",
    ResourceKind.DATABASE: "main",
}

_COMMON_SPEC_FIELDS = ("cpu_request", "cpu_limit", "memory_request", "memory_limit")

SPEC_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.SANDBOX: ("runtime_image", *_COMMON_SPEC_FIELDS),
    ResourceKind.DATABASE: ("storage_size", *_COMMON_SPEC_FIELDS),
}


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _optional_intent(value: Any) -> Intent | None:
    if value is None or value == "":
        return None
    return Intent(str(value))


def default_db_path() -> str:
    return os.getenv("DEVENV_SQLITE_PATH", "data/devenv.db")


def _table(kind: ResourceKind) -> str:
    return _TABLES[ResourceKind(kind)]


def _request_satisfied(status: ResourceStatus, target: ResourceStatus) -> bool:
    """True when a row already is, or is already heading to, the requested target.

    A CREATING row starts on its own once created, so a start request is a no-op.
    """
    if status in (target, settled_status(target)):
        return True
    return target == ResourceStatus.STARTING and status == ResourceStatus.CREATING


class SQLiteStore:
    """SQLite-backed desired/actual state store for projects and their resources.

    Concurrency rules:
    - `status`, `locked_until` and `lock_token` are the only shared mutable
      fields; they change only through `claim_batch`, `update_status`,
      `release_lease` and the desired-state entry points below.
    - Every write runs in `BEGIN IMMEDIATE`, which takes SQLite's write lock up
      front. Stores opened by different processes on the same file therefore
      serialize their claims.
    - One store may be shared by the threads of one process; an RLock guards
      the connection.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` acquires the database write lock before the first
        read, so a select-then-update inside it cannot interleave with another
        writer.
        """
        with self._lock:
            self._conn.execute(f"BEGIN {mode};")
            try:
                yield
                self._conn.execute("COMMIT;")
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise

    def _init_schema(self) -> None:
        with self.transaction():
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            # Base schema (v1): projects + one table per resource kind.
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                  project_id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  description TEXT,
                  namespace TEXT NOT NULL,
                  status TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sandboxes (
                  resource_id TEXT PRIMARY KEY,
                  project_id TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  cluster_name TEXT NOT NULL,
                  namespace TEXT NOT NULL,
                  status TEXT NOT NULL,
                  locked_until REAL,
                  lock_token TEXT,
                  last_claimed_at REAL,
                  issued_intent TEXT,
                  failed_intent TEXT,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  error TEXT,
                  runtime_image TEXT,
                  cpu_request TEXT,
                  cpu_limit TEXT,
                  memory_request TEXT,
                  memory_limit TEXT,
                  public_url TEXT,
                  ttyd_url TEXT,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  FOREIGN KEY (project_id) REFERENCES projects(project_id)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS databases (
                  resource_id TEXT PRIMARY KEY,
                  project_id TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  cluster_name TEXT NOT NULL,
                  namespace TEXT NOT NULL,
                  status TEXT NOT NULL,
                  locked_until REAL,
                  lock_token TEXT,
                  last_claimed_at REAL,
                  issued_intent TEXT,
                  failed_intent TEXT,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  error TEXT,
                  storage_size TEXT,
                  cpu_request TEXT,
                  cpu_limit TEXT,
                  memory_request TEXT,
                  memory_limit TEXT,
                  host TEXT,
                  port INTEGER,
                  database_name TEXT,
                  username TEXT,
                  password TEXT,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  FOREIGN KEY (project_id) REFERENCES projects(project_id)
                );
                """
            )
            for table in _TABLES.values():
                cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_project ON {table}(project_id);")
                cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_claim ON {table}(status, locked_until);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id, created_at);")

            # New databases start at schema_version=1 and migrate explicitly.
            cur.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", "1"),
            )

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        with self._lock:
            current = self._get_schema_version()
            target = int(SCHEMA_VERSION)
            if current == target:
                return
            if current > target:
                raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

            with self.transaction():
                cur = self._conn.cursor()
                while current < target:
                    if current == 1:
                        self._migrate_1_to_2(cur)
                        current = 2
                        self._set_schema_version(current)
                    else:
                        raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Trace events: program-recorded audit trail of status changes and handler failures.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS resource_events (
              event_id TEXT PRIMARY KEY,
              resource_id TEXT,
              project_id TEXT NOT NULL,
              kind TEXT,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_resource_events_resource ON resource_events(resource_id, created_at);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_resource_events_project ON resource_events(project_id, created_at);"
        )

    # --- Row mapping
    def _resource_from_row(self, kind: ResourceKind, row: sqlite3.Row) -> ResourceRecord:
        keys = set(row.keys())
        spec = {k: row[k] for k in SPEC_FIELDS[kind] if k in keys and row[k] is not None}
        connection = {k: row[k] for k in CONNECTION_FIELDS[kind] if k in keys and row[k] is not None}
        return ResourceRecord(
            resource_id=str(row["resource_id"]),
            kind=kind,
            project_id=str(row["project_id"]),
            user_id=str(row["user_id"]),
            name=str(row["name"]),
            cluster_name=str(row["cluster_name"]),
            namespace=str(row["namespace"]),
            status=ResourceStatus(row["status"]),
            locked_until=float(row["locked_until"]) if row["locked_until"] is not None else None,
            lock_token=row["lock_token"],
            issued_intent=_optional_intent(row["issued_intent"]),
            failed_intent=_optional_intent(row["failed_intent"]),
            attempts=int(row["attempts"] or 0),
            error=row["error"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            spec=spec,
            connection=connection,
        )

    @staticmethod
    def _project_from_row(row: sqlite3.Row) -> ProjectRecord:
        return ProjectRecord(
            project_id=str(row["project_id"]),
            user_id=str(row["user_id"]),
            name=str(row["name"]),
            description=row["description"],
            namespace=str(row["namespace"]),
            status=ProjectStatus(row["status"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )

    # --- Reads
    def get_resource(self, kind: ResourceKind, resource_id: str) -> ResourceRecord | None:
        kind = ResourceKind(kind)
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM {_table(kind)} WHERE resource_id = ? LIMIT 1;",
                (resource_id,),
            ).fetchone()
        return self._resource_from_row(kind, row) if row is not None else None

    def _require_resource(self, kind: ResourceKind, resource_id: str) -> ResourceRecord:
        record = self.get_resource(kind, resource_id)
        if record is None:
            raise NotFoundError(f"{ResourceKind(kind).value} {resource_id} not found")
        return record

    def list_resources_for_project(self, project_id: str) -> list[ResourceRecord]:
        out: list[ResourceRecord] = []
        with self._lock:
            for kind, table in _TABLES.items():
                rows = self._conn.execute(
                    f"SELECT * FROM {table} WHERE project_id = ? ORDER BY created_at, resource_id;",
                    (project_id,),
                ).fetchall()
                out.extend(self._resource_from_row(kind, r) for r in rows)
        return out

    def get_project(self, project_id: str) -> ProjectRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM projects WHERE project_id = ? LIMIT 1;",
                (project_id,),
            ).fetchone()
        return self._project_from_row(row) if row is not None else None

    def list_projects_page(
        self,
        *,
        user_id: str | None,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if user_id:
            where.append("user_id = ?")
            params.append(user_id)

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, project_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND project_id < ?))")
            params.extend([float(created_at), float(created_at), str(project_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT *
                FROM projects
                WHERE {where_sql}
                ORDER BY created_at DESC, project_id DESC
                LIMIT ?;
                """,
                (*params, fetch_n),
            ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [self._project_from_row(r).to_public_dict() for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_resources_by_status(self, kind: ResourceKind) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT status, COUNT(*) AS n FROM {_table(kind)} GROUP BY status ORDER BY status;",
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def count_projects_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM projects GROUP BY status ORDER BY status;",
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Desired state (entry points used by the request layer)
    def create_project(
        self,
        *,
        user_id: str,
        name: str,
        namespace: str,
        description: str | None = None,
        sandbox_settings: dict[str, Any] | None = None,
        database_settings: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> tuple[ProjectRecord, list[ResourceRecord]]:
        """Insert a project with one sandbox and one database, both CREATING and unlocked."""
        if not (user_id or "").strip():
            raise ValueError("user_id is required")
        if not (name or "").strip():
            raise ValueError("Project name is required")

        ts = _utc_ts() if now is None else float(now)
        project_id = _new_id("proj")
        cluster_name = make_cluster_name(name, suffix=random_suffix(8))
        settings = {
            ResourceKind.SANDBOX: dict(sandbox_settings or {}),
            ResourceKind.DATABASE: dict(database_settings or {}),
        }
        initial = aggregate([ResourceStatus.CREATING, ResourceStatus.CREATING]) or ProjectStatus.CREATING

        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO projects(project_id, user_id, name, description, namespace, status, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (project_id, user_id, name, description, namespace, initial.value, ts, ts),
            )
            resource_ids: list[tuple[ResourceKind, str]] = []
            for kind, table in _TABLES.items():
                resource_id = _new_id(_ID_PREFIX[kind])
                spec_cols = [k for k in SPEC_FIELDS[kind] if settings[kind].get(k) is not None]
                cols = [
                    "resource_id",
                    "project_id",
                    "user_id",
                    "name",
                    "cluster_name",
                    "namespace",
                    "status",
                    "locked_until",
                    "created_at",
                    "updated_at",
                    *spec_cols,
                ]
                values = [
                    resource_id,
                    project_id,
                    user_id,
                    _DEFAULT_NAMES[kind],
                    cluster_name,
                    namespace,
                    ResourceStatus.CREATING.value,
                    None,
                    ts,
                    ts,
                    *[str(settings[kind][k]) for k in spec_cols],
                ]
                self._conn.execute(
                    f"INSERT INTO {table}({', '.join(cols)}) VALUES({', '.join(['?'] * len(cols))});",
                    values,
                )
                self._append_event(
                    project_id=project_id,
                    resource_id=resource_id,
                    kind=kind,
                    event_type="resource_created",
                    payload={"status": ResourceStatus.CREATING.value, "cluster_name": cluster_name},
                    ts=ts,
                )
                resource_ids.append((kind, resource_id))

        project = self.get_project(project_id)
        assert project is not None
        resources = [self._require_resource(kind, rid) for kind, rid in resource_ids]
        return project, resources

    def request_transition(
        self,
        kind: ResourceKind,
        resource_id: str,
        target: ResourceStatus,
        *,
        reason: str | None = None,
        now: float | None = None,
    ) -> ResourceRecord:
        """Record a user's desired transition (STARTING / STOPPING / TERMINATING).

        Requesting a status the row already has (or is heading to) is a no-op.
        A row under a live
        worker lease is rejected with ResourceBusyError; an ERROR backoff
        (lease without a token) does not block the request.
        """
        kind = ResourceKind(kind)
        target = ResourceStatus(target)
        if target not in REQUESTABLE_STATUSES:
            raise ValueError(f"Status {target.value} cannot be requested directly.")
        ts = _utc_ts() if now is None else float(now)

        with self.transaction():
            record = self._require_resource(kind, resource_id)
            if _request_satisfied(record.status, target):
                return record
            self._apply_request_locked(record, target, reason=reason, ts=ts)
            self._reconcile_project_status_locked(record.project_id, ts=ts)
        return self._require_resource(kind, resource_id)

    def request_project_transition(
        self,
        project_id: str,
        target: ResourceStatus,
        *,
        reason: str | None = None,
        now: float | None = None,
    ) -> list[ResourceRecord]:
        """Apply a desired transition to every child of a project, all or nothing.

        Children already in the target, already settled where it leads
        (RUNNING for a start, STOPPED for a stop, TERMINATED for a delete) or
        still CREATING on a start request are left alone.
        """
        target = ResourceStatus(target)
        if target not in REQUESTABLE_STATUSES:
            raise ValueError(f"Status {target.value} cannot be requested directly.")
        ts = _utc_ts() if now is None else float(now)

        with self.transaction():
            if self.get_project(project_id) is None:
                raise NotFoundError(f"project {project_id} not found")
            children = [
                r for r in self.list_resources_for_project(project_id) if not _request_satisfied(r.status, target)
            ]
            for record in children:
                self._check_request_locked(record, target, ts=ts)
            for record in children:
                self._apply_request_locked(record, target, reason=reason, ts=ts)
            self._reconcile_project_status_locked(project_id, ts=ts)
        return self.list_resources_for_project(project_id)

    def _check_request_locked(self, record: ResourceRecord, target: ResourceStatus, *, ts: float) -> None:
        if record.lock_token is not None and record.is_leased(now=ts):
            raise ResourceBusyError(
                f"{record.kind.value} {record.resource_id} is being reconciled; retry after the lease expires."
            )
        assert_transition(record.status, target, resource_id=record.resource_id)

    def _apply_request_locked(
        self, record: ResourceRecord, target: ResourceStatus, *, reason: str | None, ts: float
    ) -> None:
        self._check_request_locked(record, target, ts=ts)
        self._conn.execute(
            f"""
            UPDATE {_table(record.kind)}
            SET
              status = ?,
              locked_until = NULL,
              lock_token = NULL,
              issued_intent = NULL,
              failed_intent = NULL,
              attempts = 0,
              error = NULL,
              updated_at = ?
            WHERE resource_id = ? AND status = ?;
            """,
            (target.value, ts, record.resource_id, record.status.value),
        )
        self._append_event(
            project_id=record.project_id,
            resource_id=record.resource_id,
            kind=record.kind,
            event_type="transition_requested",
            payload={"from": record.status.value, "to": target.value, "reason": reason},
            ts=ts,
        )

    # --- Leases (single-writer safe claims)
    def claim_batch(
        self,
        kind: ResourceKind,
        *,
        limit: int,
        lease_s: float,
        statuses: Iterable[ResourceStatus] | None = None,
        now: float | None = None,
    ) -> list[ResourceRecord]:
        """Atomically lease up to `limit` eligible rows of one kind.

        Eligible: `locked_until IS NULL OR locked_until < now` (and, when
        given, status in `statuses`). Selection and lease stamping happen in
        one conditional UPDATE; the rows returned are exactly those stamped
        with this call's fresh lock token. Least recently claimed rows go
        first so a long tail of not-yet-ready rows cannot starve the rest.

        Fewer rows than `limit` simply means fewer are eligible right now
        (possibly because other workers hold them).
        """
        kind = ResourceKind(kind)
        if int(limit) <= 0:
            return []
        if float(lease_s) <= 0:
            raise ValueError("lease_s must be > 0")

        ts = _utc_ts() if now is None else float(now)
        token = _new_id("lease")
        table = _table(kind)

        where = ["(locked_until IS NULL OR locked_until < ?)"]
        params: list[Any] = [ts]
        status_values = sorted({ResourceStatus(s).value for s in statuses}) if statuses is not None else None
        if status_values is not None:
            if not status_values:
                return []
            where.append("status IN (%s)" % ",".join(["?"] * len(status_values)))
            params.extend(status_values)
        where_sql = " AND ".join(where)

        with self.transaction():
            self._conn.execute(
                f"""
                UPDATE {table}
                SET
                  locked_until = ?,
                  lock_token = ?,
                  last_claimed_at = ?
                WHERE resource_id IN (
                  SELECT resource_id
                  FROM {table}
                  WHERE {where_sql}
                  ORDER BY COALESCE(last_claimed_at, 0) ASC, created_at ASC, resource_id ASC
                  LIMIT ?
                )
                AND (locked_until IS NULL OR locked_until < ?);
                """,
                (ts + float(lease_s), token, ts, *params, int(limit), ts),
            )
            rows = self._conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE lock_token = ?
                ORDER BY created_at ASC, resource_id ASC;
                """,
                (token,),
            ).fetchall()
        return [self._resource_from_row(kind, r) for r in rows]

    def release_lease(self, kind: ResourceKind, resource_id: str, *, lease_token: str) -> bool:
        """Drop a lease without touching status. False if the token no longer owns the row."""
        with self.transaction():
            cur = self._conn.execute(
                f"""
                UPDATE {_table(kind)}
                SET locked_until = NULL, lock_token = NULL
                WHERE resource_id = ? AND lock_token = ?;
                """,
                (resource_id, lease_token),
            )
            return cur.rowcount == 1

    # --- Status (the only place resource status changes)
    def update_status(
        self,
        kind: ResourceKind,
        resource_id: str,
        status: ResourceStatus,
        *,
        release_lease: bool = True,
        lease_token: str | None = None,
        issued_intent: Intent | None = None,
        failed_intent: Intent | None = None,
        error: str | None = None,
        retry_after_s: float | None = None,
        connection: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> ResourceRecord:
        """Write a new status (compare-and-swap on the current status and lease).

        - Illegal transitions raise InvalidTransitionError; TERMINATED never changes.
        - With `lease_token`, the write only succeeds while that token owns the
          row (LeaseLostError otherwise).
        - `release_lease` clears the lease; `retry_after_s` instead leaves an
          ownerless lease that expires after the given delay (ERROR backoff).
        - ERROR increments `attempts` and records `failed_intent` / `error`;
          any other status resets them.
        - STOPPED and TERMINATED clear the connection fields.
        - The owning project's status is recomputed in the same transaction.
        """
        kind = ResourceKind(kind)
        status = ResourceStatus(status)
        ts = _utc_ts() if now is None else float(now)

        with self.transaction():
            record = self._require_resource(kind, resource_id)
            assert_transition(record.status, status, resource_id=resource_id)
            if lease_token is not None and record.lock_token != lease_token:
                raise LeaseLostError(f"Lease on {kind.value} {resource_id} is no longer held by this worker.")

            if retry_after_s is not None:
                locked_until: float | None = ts + float(retry_after_s)
                lock_token: str | None = None
            elif release_lease:
                locked_until = None
                lock_token = None
            else:
                locked_until = record.locked_until
                lock_token = record.lock_token

            is_error = status == ResourceStatus.ERROR
            sets = [
                "status = ?",
                "locked_until = ?",
                "lock_token = ?",
                "issued_intent = ?",
                "failed_intent = ?",
                "attempts = ?",
                "error = ?",
                "updated_at = ?",
            ]
            values: list[Any] = [
                status.value,
                locked_until,
                lock_token,
                issued_intent.value if issued_intent is not None else None,
                failed_intent.value if (is_error and failed_intent is not None) else None,
                record.attempts + 1 if is_error else 0,
                error if is_error else None,
                ts,
            ]
            for key, value in (connection or {}).items():
                if key not in CONNECTION_FIELDS[kind]:
                    raise ValueError(f"Unknown connection field for {kind.value}: {key!r}")
                sets.append(f"{key} = ?")
                values.append(value)
            if connection is None and status in (ResourceStatus.STOPPED, ResourceStatus.TERMINATED):
                # Credentials and URLs only describe a running workload.
                sets.extend(f"{key} = NULL" for key in CONNECTION_FIELDS[kind])

            cur = self._conn.execute(
                f"""
                UPDATE {_table(kind)}
                SET {", ".join(sets)}
                WHERE resource_id = ? AND status = ? AND lock_token IS ?;
                """,
                (*values, resource_id, record.status.value, record.lock_token),
            )
            if cur.rowcount != 1:
                raise LeaseLostError(f"Concurrent write on {kind.value} {resource_id}; status not updated.")

            if status != record.status:
                self._append_event(
                    project_id=record.project_id,
                    resource_id=resource_id,
                    kind=kind,
                    event_type="status_changed",
                    payload={
                        "from": record.status.value,
                        "to": status.value,
                        "error": error if is_error else None,
                        "failed_intent": failed_intent.value if (is_error and failed_intent) else None,
                    },
                    ts=ts,
                )
            self._reconcile_project_status_locked(record.project_id, ts=ts)

        return self._require_resource(kind, resource_id)

    # --- Project status (single writer: the aggregator)
    def reconcile_project_status(self, project_id: str, *, now: float | None = None) -> ProjectStatus | None:
        """Recompute a project's status from its children; write only if it changed."""
        ts = _utc_ts() if now is None else float(now)
        with self.transaction():
            return self._reconcile_project_status_locked(project_id, ts=ts)

    def reconcile_all_projects(self) -> int:
        """Startup sweep: re-derive every project status. Returns how many changed."""
        ts = _utc_ts()
        changed = 0
        with self.transaction():
            rows = self._conn.execute("SELECT project_id, status FROM projects;").fetchall()
            for r in rows:
                new_status = self._reconcile_project_status_locked(str(r["project_id"]), ts=ts)
                if new_status is not None and new_status.value != r["status"]:
                    changed += 1
        return changed

    def _reconcile_project_status_locked(self, project_id: str, *, ts: float) -> ProjectStatus | None:
        row = self._conn.execute(
            "SELECT status FROM projects WHERE project_id = ? LIMIT 1;",
            (project_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"project {project_id} not found")

        statuses: list[ResourceStatus] = []
        for table in _TABLES.values():
            child_rows = self._conn.execute(
                f"SELECT status FROM {table} WHERE project_id = ?;",
                (project_id,),
            ).fetchall()
            statuses.extend(ResourceStatus(c["status"]) for c in child_rows)

        new_status = aggregate(statuses)
        if new_status is None or new_status.value == row["status"]:
            return new_status

        self._conn.execute(
            "UPDATE projects SET status = ?, updated_at = ? WHERE project_id = ?;",
            (new_status.value, ts, project_id),
        )
        self._append_event(
            project_id=project_id,
            resource_id=None,
            kind=None,
            event_type="project_status_changed",
            payload={"from": row["status"], "to": new_status.value},
            ts=ts,
        )
        return new_status

    # --- Events (trace)
    def _append_event(
        self,
        *,
        project_id: str,
        resource_id: str | None,
        kind: ResourceKind | None,
        event_type: str,
        payload: dict[str, Any],
        ts: float,
    ) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO resource_events(event_id, resource_id, project_id, kind, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (
                event_id,
                resource_id,
                project_id,
                kind.value if kind is not None else None,
                ts,
                event_type,
                _json_dumps(payload),
            ),
        )
        return event_id

    def append_event(self, record: ResourceRecord, event_type: str, payload: dict[str, Any]) -> str:
        with self.transaction():
            return self._append_event(
                project_id=record.project_id,
                resource_id=record.resource_id,
                kind=record.kind,
                event_type=event_type,
                payload=payload,
                ts=_utc_ts(),
            )

    def list_events(
        self,
        *,
        resource_id: str | None = None,
        project_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        where = ["1=1"]
        params: list[Any] = []
        if resource_id:
            where.append("resource_id = ?")
            params.append(resource_id)
        if project_id:
            where.append("project_id = ?")
            params.append(project_id)
        if event_type:
            where.append("event_type = ?")
            params.append(event_type)

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT event_id, resource_id, project_id, kind, created_at, event_type, payload_json
                FROM resource_events
                WHERE {" AND ".join(where)}
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?;
                """,
                (*params, int(limit)),
            ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "resource_id": r["resource_id"],
                "project_id": r["project_id"],
                "kind": r["kind"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(str(r["payload_json"])),
            }
            for r in rows
        ]
