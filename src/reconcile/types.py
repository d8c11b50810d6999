from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResourceKind(str, Enum):
    SANDBOX = "sandbox"
    DATABASE = "database"


class ResourceStatus(str, Enum):
    """Lifecycle status of one sandbox or database row."""

    CREATING = "CREATING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"
    ERROR = "ERROR"


class ProjectStatus(str, Enum):
    """Derived project status (written only by the status aggregator)."""

    CREATING = "CREATING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"
    ERROR = "ERROR"
    PARTIAL = "PARTIAL"


class Intent(str, Enum):
    """Action a transition handler is asked to perform."""

    CREATE = "create"
    START = "start"
    STOP = "stop"
    DELETE = "delete"
    CHECK = "check"


def parse_kind(value: Any) -> ResourceKind:
    try:
        return ResourceKind(str(value).strip().lower())
    except ValueError as e:
        raise ValueError(f"Invalid resource kind: {value!r}") from e


def parse_status(value: Any) -> ResourceStatus:
    try:
        return ResourceStatus(str(value).strip().upper())
    except ValueError as e:
        raise ValueError(f"Invalid resource status: {value!r}") from e


# Kind-specific connection columns, populated once a resource is RUNNING.
CONNECTION_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.SANDBOX: ("public_url", "ttyd_url"),
    ResourceKind.DATABASE: ("host", "port", "database_name", "username", "password"),
}


@dataclass(frozen=True)
class ResourceRecord:
    resource_id: str
    kind: ResourceKind
    project_id: str
    user_id: str
    name: str
    cluster_name: str
    namespace: str
    status: ResourceStatus
    locked_until: float | None
    lock_token: str | None
    issued_intent: Intent | None
    failed_intent: Intent | None
    attempts: int
    error: str | None
    created_at: float
    updated_at: float
    spec: dict[str, Any] = field(default_factory=dict)
    connection: dict[str, Any] = field(default_factory=dict)

    def is_leased(self, *, now: float | None = None) -> bool:
        ts = time.time() if now is None else float(now)
        return self.locked_until is not None and self.locked_until >= ts

    def to_public_dict(self) -> dict[str, Any]:
        """Row shape exposed to readers outside the reconciler (no lease token)."""
        out: dict[str, Any] = {
            "id": self.resource_id,
            "project_id": self.project_id,
            "kind": self.kind.value,
            "name": self.name,
            "cluster_name": self.cluster_name,
            "namespace": self.namespace,
            "status": self.status.value,
            "locked_until": self.locked_until,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        out.update(self.spec)
        out.update(self.connection)
        return out


@dataclass(frozen=True)
class ProjectRecord:
    project_id: str
    user_id: str
    name: str
    description: str | None
    namespace: str
    status: ProjectStatus
    created_at: float
    updated_at: float

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.project_id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "namespace": self.namespace,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ResourceEvent:
    """Immutable payload carried on the event bus.

    `resource` is the row snapshot at emission time; handlers must re-read the
    row before acting on anything that may have changed since.
    """

    kind: ResourceKind
    intent: Intent
    user_id: str
    project_id: str
    resource: ResourceRecord
    lease_token: str | None
    emitted_at: float = field(default_factory=time.time)

    @property
    def resource_id(self) -> str:
        return self.resource.resource_id
