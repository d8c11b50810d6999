from __future__ import annotations

import logging
import threading
from typing import Callable

from src.reconcile.types import Intent, ResourceEvent, ResourceKind


logger = logging.getLogger(__name__)

Listener = Callable[[ResourceEvent], None]


class EventBus:
    """In-process dispatch of (kind, intent) events to registered listeners.

    Listeners are registered during startup; `freeze()` closes registration
    before the scheduler starts emitting. Emitting to a (kind, intent) with no
    listener is a wiring bug and raises LookupError. A listener that raises is
    logged and does not prevent the remaining listeners from running.
    """

    def __init__(self) -> None:
        self._listeners: dict[tuple[ResourceKind, Intent], list[Listener]] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, kind: ResourceKind, intent: Intent, listener: Listener) -> None:
        key = (ResourceKind(kind), Intent(intent))
        with self._lock:
            if self._frozen:
                raise RuntimeError("EventBus is frozen; listeners must be registered before startup.")
            self._listeners.setdefault(key, []).append(listener)
        logger.debug("Registered listener for %s/%s", key[0].value, key[1].value)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def listeners(self, kind: ResourceKind, intent: Intent) -> list[Listener]:
        with self._lock:
            return list(self._listeners.get((ResourceKind(kind), Intent(intent)), []))

    def has_listener(self, kind: ResourceKind, intent: Intent) -> bool:
        return bool(self.listeners(kind, intent))

    def emit(self, event: ResourceEvent) -> int:
        """Deliver `event` to every listener of its (kind, intent). Returns the number that succeeded."""
        listeners = self.listeners(event.kind, event.intent)
        if not listeners:
            raise LookupError(f"No listener registered for {event.kind.value}/{event.intent.value}")

        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Listener failed for %s/%s on %s",
                    event.kind.value,
                    event.intent.value,
                    event.resource_id,
                )
        return delivered
