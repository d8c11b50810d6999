from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from src.cluster.errors import PermanentConfigError
from src.reconcile.types import ResourceKind, ResourceRecord, ResourceStatus
from src.utils.names import is_valid_cluster_name


@dataclass(frozen=True)
class ResourceRef:
    """Scope + name of one cluster object. Every backend call takes one."""

    kind: ResourceKind
    user_id: str
    namespace: str
    name: str


@dataclass(frozen=True)
class ResourceSpec:
    ref: ResourceRef
    project_id: str
    settings: dict[str, Any] = field(default_factory=dict)


class ClusterBackend(Protocol):
    """Idempotent cluster operations, per resource kind.

    `create` on an already-created object, `start` on a running one, `stop` on
    a stopped one and `delete` on a missing one are all no-ops. `get_status`
    is a live read mapped into ResourceStatus; a missing object reads as
    TERMINATED.
    """

    def create(self, spec: ResourceSpec) -> None: ...

    def start(self, ref: ResourceRef) -> None: ...

    def stop(self, ref: ResourceRef) -> None: ...

    def delete(self, ref: ResourceRef) -> None: ...

    def get_status(self, ref: ResourceRef) -> ResourceStatus: ...

    def connection_info(self, ref: ResourceRef) -> dict[str, Any]: ...


def resolve_ref(record: ResourceRecord) -> ResourceRef:
    """Resolve the cluster scope of a row before any backend call.

    A missing owner/namespace or an invalid cluster name is a configuration
    problem, not a transient one.
    """
    user_id = (record.user_id or "").strip()
    namespace = (record.namespace or "").strip()
    name = (record.cluster_name or "").strip()
    if not user_id:
        raise PermanentConfigError(
            f"Resource {record.resource_id} has no owning user.",
            details={"resource_id": record.resource_id},
        )
    if not namespace:
        raise PermanentConfigError(
            f"Resource {record.resource_id} has no cluster namespace.",
            details={"resource_id": record.resource_id, "user_id": user_id},
        )
    if not is_valid_cluster_name(namespace):
        raise PermanentConfigError(
            f"Invalid namespace for {record.resource_id}: {namespace!r}",
            details={"resource_id": record.resource_id, "namespace": namespace},
        )
    if not is_valid_cluster_name(name):
        raise PermanentConfigError(
            f"Invalid cluster name for {record.resource_id}: {name!r}",
            details={"resource_id": record.resource_id, "cluster_name": name},
        )
    return ResourceRef(kind=record.kind, user_id=user_id, namespace=namespace, name=name)


def spec_for(record: ResourceRecord) -> ResourceSpec:
    return ResourceSpec(ref=resolve_ref(record), project_id=record.project_id, settings=dict(record.spec))
