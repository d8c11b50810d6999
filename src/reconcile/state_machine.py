from __future__ import annotations

from src.reconcile.types import Intent, ResourceRecord, ResourceStatus


S = ResourceStatus


class InvalidTransitionError(ValueError):
    def __init__(self, current: ResourceStatus, target: ResourceStatus, *, resource_id: str | None = None) -> None:
        where = f" for {resource_id}" if resource_id else ""
        super().__init__(f"Illegal status transition{where}: {current.value} -> {target.value}")
        self.current = current
        self.target = target
        self.resource_id = resource_id


# Nothing ever moves back to CREATING; TERMINATED is absorbing.
_TRANSITIONS: dict[ResourceStatus, frozenset[ResourceStatus]] = {
    S.CREATING: frozenset({S.STARTING, S.TERMINATING, S.ERROR}),
    S.STARTING: frozenset({S.RUNNING, S.STOPPING, S.TERMINATING, S.ERROR}),
    S.RUNNING: frozenset({S.STOPPING, S.TERMINATING, S.ERROR}),
    S.STOPPING: frozenset({S.STOPPED, S.TERMINATING, S.ERROR}),
    S.STOPPED: frozenset({S.STARTING, S.TERMINATING, S.ERROR}),
    S.TERMINATING: frozenset({S.TERMINATED, S.ERROR}),
    S.TERMINATED: frozenset(),
    S.ERROR: frozenset({S.STARTING, S.RUNNING, S.STOPPING, S.STOPPED, S.TERMINATING, S.TERMINATED, S.ERROR}),
}

# Statuses the scheduler claims; RUNNING / STOPPED / TERMINATED are at rest.
ACTIONABLE_STATUSES: frozenset[ResourceStatus] = frozenset(
    {S.CREATING, S.STARTING, S.STOPPING, S.TERMINATING, S.ERROR}
)

# Statuses a user may request through the desired-state entry points.
REQUESTABLE_STATUSES: frozenset[ResourceStatus] = frozenset({S.STARTING, S.STOPPING, S.TERMINATING})

# Transitional status -> (action intent, status reached once the backend confirms it).
_TRANSITIONAL: dict[ResourceStatus, tuple[Intent, ResourceStatus]] = {
    S.STARTING: (Intent.START, S.RUNNING),
    S.STOPPING: (Intent.STOP, S.STOPPED),
    S.TERMINATING: (Intent.DELETE, S.TERMINATED),
}

# Status written after the backend call for an intent succeeded.
_SUCCESS_STATUS: dict[Intent, ResourceStatus] = {
    Intent.CREATE: S.STARTING,
    Intent.START: S.STARTING,
    Intent.STOP: S.STOPPING,
    Intent.DELETE: S.TERMINATING,
}

# Statuses a handler for a given intent may act on (anything else is stale).
_SOURCE_STATUSES: dict[Intent, frozenset[ResourceStatus]] = {
    Intent.CREATE: frozenset({S.CREATING, S.ERROR}),
    Intent.START: frozenset({S.STARTING, S.ERROR}),
    Intent.STOP: frozenset({S.STOPPING, S.ERROR}),
    Intent.DELETE: frozenset({S.TERMINATING, S.ERROR}),
    Intent.CHECK: frozenset({S.STARTING, S.STOPPING, S.TERMINATING}),
}


def allowed_targets(current: ResourceStatus) -> frozenset[ResourceStatus]:
    return _TRANSITIONS[current]


def can_transition(current: ResourceStatus, target: ResourceStatus) -> bool:
    if current == S.TERMINATED:
        return False
    if current == target:
        return True
    return target in _TRANSITIONS[current]


def assert_transition(current: ResourceStatus, target: ResourceStatus, *, resource_id: str | None = None) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target, resource_id=resource_id)


def is_terminal(status: ResourceStatus) -> bool:
    return status == S.TERMINATED


def success_status(intent: Intent) -> ResourceStatus:
    """Status to write after the backend accepted an action intent (not CHECK)."""
    try:
        return _SUCCESS_STATUS[intent]
    except KeyError as e:
        raise ValueError(f"Intent has no fixed success status: {intent.value}") from e


def settled_status(transitional: ResourceStatus) -> ResourceStatus:
    """RUNNING / STOPPED / TERMINATED for STARTING / STOPPING / TERMINATING."""
    try:
        return _TRANSITIONAL[transitional][1]
    except KeyError as e:
        raise ValueError(f"Not a transitional status: {transitional.value}") from e


def handles(intent: Intent, status: ResourceStatus) -> bool:
    return status in _SOURCE_STATUSES[intent]


def derive_intent(record: ResourceRecord) -> Intent | None:
    """Pick the intent for a claimed row from its status and recorded context.

    A transitional status whose backend call was already issued only needs a
    status check. A row in ERROR retries the intent that failed, so a failure
    during creation retries CREATE rather than START.
    """
    status = record.status
    if status == S.CREATING:
        return Intent.CREATE
    if status in _TRANSITIONAL:
        action = _TRANSITIONAL[status][0]
        if record.issued_intent == action:
            return Intent.CHECK
        return action
    if status == S.ERROR:
        failed = record.failed_intent
        if failed is None:
            return Intent.CREATE
        if failed == Intent.CHECK:
            # The check itself failed; re-issue the action it was confirming.
            return record.issued_intent or Intent.CREATE
        return failed
    return None
