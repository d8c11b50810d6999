from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from src.cluster.backend import ClusterBackend
from src.config.load_config import AppConfig, ReconcilerConfig
from src.reconcile.events import EventBus
from src.reconcile.handlers import TransitionHandlers, register_handlers
from src.reconcile.state_machine import ACTIONABLE_STATUSES, derive_intent
from src.reconcile.types import ResourceEvent, ResourceKind, ResourceRecord
from src.storage.sqlite_store import SQLiteStore
from src.utils.backoff import BackoffPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickResult:
    kind: ResourceKind
    claimed: int = 0
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "claimed": self.claimed,
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_s": self.duration_s,
        }


class ReconcileScheduler:
    """Background reconciler: one tick loop per resource kind.

    A tick claims up to `batch_size` actionable rows, derives an intent for
    each and emits it on the bus. The batch runs on a bounded pool of
    `max_concurrency` threads and the next tick of that kind is only scheduled
    once the whole batch returned, so ticks of one kind never overlap.
    """

    def __init__(
        self,
        *,
        store: SQLiteStore,
        bus: EventBus,
        config: ReconcilerConfig | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or ReconcilerConfig()
        self._threads: dict[ResourceKind, threading.Thread] = {}
        self._executors: dict[ResourceKind, ThreadPoolExecutor] = {}
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._last_ticks: dict[ResourceKind, TickResult] = {}

    @classmethod
    def from_config(cls, app_config: AppConfig, *, store: SQLiteStore, backend: ClusterBackend) -> ReconcileScheduler:
        """Wire bus + handlers for the configured kinds and return a ready scheduler."""
        backoff = BackoffPolicy(
            base_s=app_config.backoff.base_s,
            factor=app_config.backoff.factor,
            max_s=app_config.backoff.max_s,
        )
        bus = EventBus()
        handlers = TransitionHandlers(store, backend, backoff=backoff)
        register_handlers(bus, handlers, kinds=app_config.reconciler.kinds)
        return cls(store=store, bus=bus, config=app_config.reconciler)

    @property
    def config(self) -> ReconcilerConfig:
        return self._config

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads.values())

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            last = {k.value: r.to_dict() for k, r in self._last_ticks.items()}
        return {
            "running": self.running,
            "tick_interval_s": float(self._config.tick_interval_s),
            "batch_size": int(self._config.batch_size),
            "lease_s": float(self._config.lease_s),
            "max_concurrency": int(self._config.max_concurrency),
            "kinds": [k.value for k in self._config.kinds],
            "db_path": str(self._store.db_path),
            "last_ticks": last,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        changed = self._store.reconcile_all_projects()
        if changed:
            logger.info("Startup sweep corrected %d project status(es)", changed)
        for kind in self._config.kinds:
            t = threading.Thread(
                target=self._run_loop,
                args=(kind,),
                name=f"devenv-reconcile-{kind.value}",
                daemon=True,
            )
            self._threads[kind] = t
            t.start()
        logger.info(
            "Reconciler started (kinds=%s, tick=%.1fs, batch=%d, lease=%.0fs)",
            ",".join(k.value for k in self._config.kinds),
            self._config.tick_interval_s,
            self._config.batch_size,
            self._config.lease_s,
        )

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        for t in list(self._threads.values()):
            t.join(timeout=timeout_s)
        self._threads.clear()
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for ex in executors:
            ex.shutdown(wait=True)

    def _run_loop(self, kind: ResourceKind) -> None:
        while not self._stop.is_set():
            try:
                self.tick(kind)
            except Exception:
                # Never crash the tick loop; the next tick retries.
                logger.exception("Reconcile tick failed for %s", kind.value)
            self._stop.wait(self._config.tick_interval_s)

    def _executor(self, kind: ResourceKind) -> ThreadPoolExecutor | None:
        """Per-kind pool, created lazily. None once `stop()` was requested."""
        with self._lock:
            if self._stop.is_set():
                return None
            ex = self._executors.get(kind)
            if ex is None:
                ex = ThreadPoolExecutor(
                    max_workers=int(self._config.max_concurrency),
                    thread_name_prefix=f"devenv-{kind.value}",
                )
                self._executors[kind] = ex
            return ex

    def tick(self, kind: ResourceKind, *, now: float | None = None) -> TickResult:
        kind = ResourceKind(kind)
        started = time.monotonic()
        records = self._store.claim_batch(
            kind,
            limit=self._config.batch_size,
            lease_s=self._config.lease_s,
            statuses=ACTIONABLE_STATUSES,
            now=now,
        )

        events: list[ResourceEvent] = []
        skipped = 0
        for record in records:
            event = self._event_for(record)
            if event is None:
                skipped += 1
                self._store.release_lease(kind, record.resource_id, lease_token=record.lock_token or "")
                continue
            events.append(event)

        dispatched = 0
        failed = 0
        executor = self._executor(kind) if events else None
        if events and executor is None:
            # Stopping: hand the rows back for the next claim.
            for event in events:
                self._store.release_lease(kind, event.resource_id, lease_token=event.lease_token or "")
            skipped += len(events)
        elif executor is not None:
            futures = [executor.submit(self._dispatch, e) for e in events]
            # Wait for the whole batch before the next tick of this kind.
            for f in futures:
                if f.result():
                    dispatched += 1
                else:
                    failed += 1

        result = TickResult(
            kind=kind,
            claimed=len(records),
            dispatched=dispatched,
            skipped=skipped,
            failed=failed,
            duration_s=time.monotonic() - started,
        )
        with self._lock:
            self._last_ticks[kind] = result
        if records:
            logger.debug(
                "Tick %s: claimed=%d dispatched=%d skipped=%d failed=%d",
                kind.value,
                result.claimed,
                result.dispatched,
                result.skipped,
                result.failed,
            )
        return result

    def run_once(self, *, now: float | None = None) -> list[TickResult]:
        """One tick of every configured kind, in order."""
        return [self.tick(kind, now=now) for kind in self._config.kinds]

    def run_until_idle(self, *, max_rounds: int = 50) -> int:
        """Tick all kinds until a round claims nothing. Returns the rounds that did work."""
        rounds = 0
        for _ in range(int(max_rounds)):
            results = self.run_once()
            if not any(r.claimed for r in results):
                break
            rounds += 1
        return rounds

    @staticmethod
    def _event_for(record: ResourceRecord) -> ResourceEvent | None:
        intent = derive_intent(record)
        if intent is None:
            return None
        return ResourceEvent(
            kind=record.kind,
            intent=intent,
            user_id=record.user_id,
            project_id=record.project_id,
            resource=record,
            lease_token=record.lock_token,
        )

    def _dispatch(self, event: ResourceEvent) -> bool:
        try:
            return self._bus.emit(event) > 0
        except Exception:
            logger.exception(
                "Dispatch failed for %s/%s on %s",
                event.kind.value,
                event.intent.value,
                event.resource_id,
            )
            return False
