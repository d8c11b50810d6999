from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from typing import Any

from src.cluster.backend import ResourceRef, ResourceSpec
from src.cluster.errors import BackendError, PermanentConfigError, ResourceNotFoundError
from src.cluster.status_mapping import StatefulSetCounts, database_status_from_phase, sandbox_status_from_replicas
from src.reconcile.types import ResourceKind, ResourceStatus


@dataclass
class _SimObject:
    ref: ResourceRef
    settings: dict[str, Any]
    spec_replicas: int = 1
    counts: StatefulSetCounts = field(default_factory=StatefulSetCounts)
    phase: str = "Creating"
    deleting: bool = False
    pending: int = 0
    password: str = field(default_factory=lambda: secrets.token_urlsafe(12))


class SimulatedClusterBackend:
    """In-memory stand-in for the cluster (dry-run mode, CLI demos, tests).

    Sandboxes are modelled as a StatefulSet (desired vs observed replicas),
    databases as a managed cluster with a phase string. After each mutating
    call the object needs `settle_after` status observations before the
    observed state catches up with the desired one, so transitional statuses
    are visible to status checks.

    Every call is idempotent and recorded in `calls`. `fail_next(op, error)`
    makes the next `times` calls of `op` raise `error` before any side effect.
    """

    def __init__(
        self,
        *,
        settle_after: int = 1,
        ingress_domain: str = "dev.local",
        namespaces: dict[str, str] | None = None,
    ) -> None:
        self.settle_after = max(int(settle_after), 0)
        self.ingress_domain = ingress_domain
        self._namespaces = dict(namespaces) if namespaces is not None else None
        self._objects: dict[tuple[str, str, str], _SimObject] = {}
        self._faults: dict[str, list[BackendError]] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, ResourceRef]] = []

    # --- Fault injection / inspection
    def fail_next(self, op: str, error: BackendError, *, times: int = 1) -> None:
        with self._lock:
            self._faults.setdefault(op, []).extend([error] * int(times))

    def exists(self, ref: ResourceRef) -> bool:
        with self._lock:
            return self._key(ref) in self._objects

    def call_count(self, op: str, ref: ResourceRef | None = None) -> int:
        with self._lock:
            return sum(1 for o, r in self.calls if o == op and (ref is None or r == ref))

    # --- ClusterBackend
    def create(self, spec: ResourceSpec) -> None:
        ref = spec.ref
        with self._lock:
            self._enter("create", ref)
            if self._key(ref) in self._objects:
                return
            obj = _SimObject(ref=ref, settings=dict(spec.settings), pending=self.settle_after)
            self._objects[self._key(ref)] = obj

    def start(self, ref: ResourceRef) -> None:
        with self._lock:
            self._enter("start", ref)
            obj = self._objects.get(self._key(ref))
            if obj is None or obj.deleting or obj.spec_replicas >= 1:
                return
            obj.spec_replicas = 1
            obj.phase = "Starting"
            obj.pending = self.settle_after

    def stop(self, ref: ResourceRef) -> None:
        with self._lock:
            self._enter("stop", ref)
            obj = self._objects.get(self._key(ref))
            if obj is None or obj.deleting or obj.spec_replicas == 0:
                return
            obj.spec_replicas = 0
            obj.phase = "Stopping"
            obj.pending = self.settle_after

    def delete(self, ref: ResourceRef) -> None:
        with self._lock:
            self._enter("delete", ref)
            obj = self._objects.get(self._key(ref))
            if obj is None or obj.deleting:
                return
            if self.settle_after == 0:
                del self._objects[self._key(ref)]
                return
            obj.deleting = True
            obj.phase = "Deleting"
            obj.pending = self.settle_after

    def get_status(self, ref: ResourceRef) -> ResourceStatus:
        with self._lock:
            self._enter("get_status", ref)
            key = self._key(ref)
            obj = self._objects.get(key)
            if obj is None:
                return ResourceStatus.TERMINATED
            if obj.pending > 0:
                obj.pending -= 1
            else:
                self._settle(key, obj)
                if key not in self._objects:
                    return ResourceStatus.TERMINATED
            if obj.deleting:
                return ResourceStatus.TERMINATING
            if ref.kind == ResourceKind.SANDBOX:
                return sandbox_status_from_replicas(
                    StatefulSetCounts(
                        spec_replicas=obj.spec_replicas,
                        replicas=obj.counts.replicas,
                        ready_replicas=obj.counts.ready_replicas,
                        current_replicas=obj.counts.current_replicas,
                        updated_replicas=obj.counts.updated_replicas,
                    )
                )
            return database_status_from_phase(obj.phase)

    def connection_info(self, ref: ResourceRef) -> dict[str, Any]:
        with self._lock:
            self._enter("connection_info", ref)
            obj = self._objects.get(self._key(ref))
            if obj is None:
                raise ResourceNotFoundError(f"{ref.kind.value} {ref.namespace}/{ref.name} not found")
            if ref.kind == ResourceKind.SANDBOX:
                return {
                    "public_url": f"https://{ref.name}-app.{self.ingress_domain}",
                    "ttyd_url": f"https://{ref.name}-ttyd.{self.ingress_domain}",
                }
            return {
                "host": f"{ref.name}-postgresql.{ref.namespace}.svc.cluster.local",
                "port": 5432,
                "database_name": "postgres",
                "username": "postgres",
                "password": obj.password,
            }

    # --- internals (caller holds self._lock)
    @staticmethod
    def _key(ref: ResourceRef) -> tuple[str, str, str]:
        return (ref.kind.value, ref.namespace, ref.name)

    def _enter(self, op: str, ref: ResourceRef) -> None:
        self.calls.append((op, ref))
        if self._namespaces is not None and self._namespaces.get(ref.user_id) != ref.namespace:
            raise PermanentConfigError(
                f"User {ref.user_id!r} has no access to namespace {ref.namespace!r}",
                details={"user_id": ref.user_id, "namespace": ref.namespace},
            )
        queued = self._faults.get(op)
        if queued:
            raise queued.pop(0)

    def _settle(self, key: tuple[str, str, str], obj: _SimObject) -> None:
        if obj.deleting:
            del self._objects[key]
            return
        n = obj.spec_replicas
        obj.counts = StatefulSetCounts(
            spec_replicas=n,
            replicas=n,
            ready_replicas=n,
            current_replicas=n,
            updated_replicas=n,
        )
        obj.phase = "Running" if n > 0 else "Stopped"
