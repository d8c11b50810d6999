from __future__ import annotations

from typing import Iterable

from src.reconcile.types import ProjectStatus, ResourceStatus


S = ResourceStatus

_STARTING_MIX = frozenset({S.RUNNING, S.STARTING})
_STOPPING_MIX = frozenset({S.STOPPED, S.STOPPING})
_TERMINATING_MIX = frozenset({S.TERMINATED, S.TERMINATING})


def aggregate(statuses: Iterable[ResourceStatus]) -> ProjectStatus | None:
    """Roll child resource statuses up into one project status.

    Precedence (first match wins):
      1. any ERROR                        -> ERROR
      2. any CREATING                     -> CREATING
      3. all children share one status    -> that status
      4. all in {RUNNING, STARTING}       -> STARTING
      5. all in {STOPPED, STOPPING}       -> STOPPING
      6. all in {TERMINATED, TERMINATING} -> TERMINATING
      7. otherwise                        -> PARTIAL

    Only the set of distinct statuses matters, so the result does not depend
    on input order or multiplicity. Returns None for a project with no
    children (nothing to derive from).
    """
    distinct = frozenset(ResourceStatus(s) for s in statuses)
    if not distinct:
        return None
    if S.ERROR in distinct:
        return ProjectStatus.ERROR
    if S.CREATING in distinct:
        return ProjectStatus.CREATING
    if len(distinct) == 1:
        (only,) = distinct
        return ProjectStatus(only.value)
    if distinct <= _STARTING_MIX:
        return ProjectStatus.STARTING
    if distinct <= _STOPPING_MIX:
        return ProjectStatus.STOPPING
    if distinct <= _TERMINATING_MIX:
        return ProjectStatus.TERMINATING
    return ProjectStatus.PARTIAL
