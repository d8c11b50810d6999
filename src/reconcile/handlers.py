from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from src.cluster.backend import ClusterBackend, resolve_ref, spec_for
from src.cluster.errors import TransientBackendError, is_not_found
from src.reconcile.events import EventBus
from src.reconcile.state_machine import derive_intent, handles, settled_status, success_status
from src.reconcile.types import Intent, ResourceEvent, ResourceKind, ResourceRecord, ResourceStatus
from src.storage.sqlite_store import LeaseLostError, SQLiteStore, StoreError
from src.utils.backoff import BackoffPolicy


logger = logging.getLogger(__name__)


class _ResourceMissing(TransientBackendError):
    """The cluster lost an object the row says exists; recreate it."""


class TransitionHandlers:
    """Bus listeners that turn intents into idempotent backend calls.

    Every handler follows the same shape:
    1. re-read the row; stop if the lease moved on or the row no longer needs
       this intent (releasing our lease),
    2. resolve the cluster scope and call the backend,
    3. write the resulting status through `SQLiteStore.update_status`.

    Any exception becomes an ERROR status with a backoff lease. Handlers never
    raise to the bus.
    """

    def __init__(
        self,
        store: SQLiteStore,
        backend: ClusterBackend,
        *,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._backoff = backoff or BackoffPolicy()

    # --- Listeners (one per intent)
    def handle_create(self, event: ResourceEvent) -> None:
        self._run(event, Intent.CREATE, self._create)

    def handle_start(self, event: ResourceEvent) -> None:
        self._run(event, Intent.START, self._action(Intent.START, self._start))

    def handle_stop(self, event: ResourceEvent) -> None:
        self._run(event, Intent.STOP, self._action(Intent.STOP, self._backend.stop))

    def handle_delete(self, event: ResourceEvent) -> None:
        self._run(event, Intent.DELETE, self._action(Intent.DELETE, self._delete))

    def handle_check(self, event: ResourceEvent) -> None:
        self._run(event, Intent.CHECK, self._check)

    def listener_for(self, intent: Intent) -> Callable[[ResourceEvent], None]:
        return {
            Intent.CREATE: self.handle_create,
            Intent.START: self.handle_start,
            Intent.STOP: self.handle_stop,
            Intent.DELETE: self.handle_delete,
            Intent.CHECK: self.handle_check,
        }[Intent(intent)]

    # --- Shared skeleton
    def _run(
        self,
        event: ResourceEvent,
        intent: Intent,
        action: Callable[[ResourceRecord, str | None], None],
    ) -> None:
        token = event.lease_token
        record = self._store.get_resource(event.kind, event.resource_id)
        if record is None:
            logger.warning("%s %s vanished before %s", event.kind.value, event.resource_id, intent.value)
            return
        if token is not None and record.lock_token != token:
            logger.info(
                "Lease on %s %s moved on; dropping %s",
                record.kind.value,
                record.resource_id,
                intent.value,
            )
            return
        if not handles(intent, record.status) or derive_intent(record) != intent:
            logger.debug(
                "Skipping stale %s for %s %s (status %s)",
                intent.value,
                record.kind.value,
                record.resource_id,
                record.status.value,
            )
            self._release(record, token)
            return

        try:
            action(record, token)
        except LeaseLostError:
            logger.warning(
                "Lease on %s %s expired during %s; result left to the next claim",
                record.kind.value,
                record.resource_id,
                intent.value,
            )
        except _ResourceMissing as e:
            self._fail(record, Intent.CREATE, e, token)
        except Exception as e:
            self._fail(record, intent, e, token)

    def _release(self, record: ResourceRecord, token: str | None) -> None:
        if token is not None:
            self._store.release_lease(record.kind, record.resource_id, lease_token=token)

    def _fail(self, record: ResourceRecord, intent: Intent, error: Exception, token: str | None) -> None:
        permanent = bool(getattr(error, "permanent", False))
        attempts = record.attempts + 1
        delay = self._backoff.delay_s(attempts, permanent=permanent)
        message = f"{type(error).__name__}: {error}"
        logger.warning(
            "%s %s failed %s (attempt %d, retry in %.1fs): %s",
            record.kind.value,
            record.resource_id,
            intent.value,
            attempts,
            delay,
            message,
        )
        try:
            updated = self._store.update_status(
                record.kind,
                record.resource_id,
                ResourceStatus.ERROR,
                lease_token=token,
                issued_intent=record.issued_intent,
                failed_intent=intent,
                error=message,
                retry_after_s=delay,
            )
            payload: dict[str, Any] = {
                "intent": intent.value,
                "error": message,
                "permanent": permanent,
                "attempts": updated.attempts,
                "retry_after_s": delay,
            }
            details = getattr(error, "details", None)
            if details:
                payload["details"] = details
            self._store.append_event(updated, "handler_failed", payload)
        except (StoreError, ValueError):
            logger.exception("Could not record failure for %s %s", record.kind.value, record.resource_id)

    # --- Intent actions
    def _create(self, record: ResourceRecord, token: str | None) -> None:
        self._backend.create(spec_for(record))
        # A created workload starts right away; its next step is a status check.
        self._store.update_status(
            record.kind,
            record.resource_id,
            success_status(Intent.CREATE),
            lease_token=token,
            issued_intent=Intent.START,
        )

    def _action(
        self, intent: Intent, call: Callable[[Any], None]
    ) -> Callable[[ResourceRecord, str | None], None]:
        def run(record: ResourceRecord, token: str | None) -> None:
            call(resolve_ref(record))
            self._store.update_status(
                record.kind,
                record.resource_id,
                success_status(intent),
                lease_token=token,
                issued_intent=intent,
            )

        return run

    def _start(self, ref: Any) -> None:
        try:
            self._backend.start(ref)
        except Exception as e:
            if is_not_found(e):
                raise _ResourceMissing(f"{ref.kind.value} {ref.name} is missing from the cluster") from e
            raise

    def _delete(self, ref: Any) -> None:
        try:
            self._backend.delete(ref)
        except Exception as e:
            if not is_not_found(e):
                raise

    def _check(self, record: ResourceRecord, token: str | None) -> None:
        ref = resolve_ref(record)
        try:
            observed = self._backend.get_status(ref)
        except Exception as e:
            if not is_not_found(e):
                raise
            observed = ResourceStatus.TERMINATED

        target = settled_status(record.status)
        if observed == target:
            connection = self._backend.connection_info(ref) if target == ResourceStatus.RUNNING else None
            self._store.update_status(
                record.kind,
                record.resource_id,
                target,
                lease_token=token,
                connection=connection,
            )
            logger.info("%s %s is %s", record.kind.value, record.resource_id, target.value)
            return
        if observed == ResourceStatus.ERROR:
            raise TransientBackendError(f"Cluster reports {record.kind.value} {ref.name} as failed")
        if observed == ResourceStatus.TERMINATED:
            if target == ResourceStatus.STOPPED:
                # Nothing is left running; the next start recreates the workload.
                self._store.update_status(record.kind, record.resource_id, target, lease_token=token)
                logger.info(
                    "%s %s is gone from the cluster; recorded as STOPPED", record.kind.value, record.resource_id
                )
                return
            raise _ResourceMissing(f"{record.kind.value} {ref.name} is missing from the cluster")

        # Not there yet: free the row for the next tick.
        logger.debug(
            "%s %s still %s (want %s)",
            record.kind.value,
            record.resource_id,
            observed.value,
            target.value,
        )
        self._release(record, token)


def register_handlers(
    bus: EventBus,
    handlers: TransitionHandlers,
    *,
    kinds: Iterable[ResourceKind] | None = None,
    freeze: bool = True,
) -> None:
    """Register every (kind, intent) listener, then close registration."""
    for kind in kinds or list(ResourceKind):
        for intent in Intent:
            bus.register(kind, intent, handlers.listener_for(intent))
    if freeze:
        bus.freeze()
