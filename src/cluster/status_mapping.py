from __future__ import annotations

from dataclasses import dataclass

from src.reconcile.types import ResourceStatus


S = ResourceStatus


@dataclass(frozen=True)
class StatefulSetCounts:
    """Replica counters of a sandbox StatefulSet (spec + status fields)."""

    spec_replicas: int = 0
    replicas: int = 0
    ready_replicas: int = 0
    current_replicas: int = 0
    updated_replicas: int = 0

    @property
    def is_ready(self) -> bool:
        n = self.spec_replicas
        return (
            n > 0
            and self.replicas == n
            and self.ready_replicas == n
            and self.current_replicas == n
            and self.updated_replicas == n
        )


def sandbox_status_from_replicas(counts: StatefulSetCounts | None) -> ResourceStatus:
    """Derive sandbox status purely from StatefulSet state.

    - object missing                      -> TERMINATED
    - spec 0, pods still present          -> STOPPING
    - spec 0, no pods                     -> STOPPED
    - spec > 0, every counter at spec     -> RUNNING
    - spec > 0, otherwise                 -> STARTING

    CREATING is never returned: it only exists in the store.
    """
    if counts is None:
        return S.TERMINATED
    if counts.spec_replicas <= 0:
        return S.STOPPING if counts.current_replicas > 0 else S.STOPPED
    return S.RUNNING if counts.is_ready else S.STARTING


_DATABASE_PHASES: dict[str, ResourceStatus] = {
    "creating": S.STARTING,
    "starting": S.STARTING,
    "updating": S.STARTING,
    "running": S.RUNNING,
    "stopping": S.STOPPING,
    "stopped": S.STOPPED,
    "deleting": S.TERMINATING,
    "failed": S.ERROR,
    "abnormal": S.ERROR,
}


def database_status_from_phase(phase: str | None, *, credentials_ready: bool = True) -> ResourceStatus:
    """Map a managed database cluster phase to ResourceStatus.

    A cluster reported Running is only RUNNING once its connection secret
    exists; before that it is still STARTING. Unknown phases read as STARTING
    so a later check can settle them.
    """
    if phase is None:
        return S.TERMINATED
    status = _DATABASE_PHASES.get(phase.strip().lower(), S.STARTING)
    if status == S.RUNNING and not credentials_ready:
        return S.STARTING
    return status
