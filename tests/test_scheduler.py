from __future__ import annotations

import os
import tempfile
import threading
import time
from typing import Iterator

import pytest

from src.cluster.errors import TransientBackendError
from src.cluster.simulated import SimulatedClusterBackend
from src.config.load_config import ReconcilerConfig
from src.reconcile.events import EventBus
from src.reconcile.handlers import TransitionHandlers, register_handlers
from src.reconcile.types import Intent, ProjectStatus, ResourceEvent, ResourceKind, ResourceStatus
from src.runtime.scheduler import ReconcileScheduler
from src.storage.sqlite_store import SQLiteStore
from src.utils.backoff import BackoffPolicy


S = ResourceStatus
P = ProjectStatus


@pytest.fixture()
def store() -> Iterator[SQLiteStore]:
    with tempfile.TemporaryDirectory() as td:
        s = SQLiteStore(os.path.join(td, "app.db"))
        try:
            yield s
        finally:
            s.close()


def _scheduler(store: SQLiteStore, backend: SimulatedClusterBackend) -> ReconcileScheduler:
    config = ReconcilerConfig(tick_interval_s=0.05, batch_size=10, lease_s=60.0, max_concurrency=4)
    bus = EventBus()
    register_handlers(bus, TransitionHandlers(store, backend, backoff=BackoffPolicy(base_s=5.0)))
    return ReconcileScheduler(store=store, bus=bus, config=config)


def _status(store: SQLiteStore, kind: ResourceKind, resource_id: str) -> ResourceStatus:
    row = store.get_resource(kind, resource_id)
    assert row is not None
    return row.status


def _project_status(store: SQLiteStore, project_id: str) -> ProjectStatus:
    project = store.get_project(project_id)
    assert project is not None
    return project.status


def test_tick_dispatches_claimed_rows(store: SQLiteStore) -> None:
    scheduler = _scheduler(store, SimulatedClusterBackend(settle_after=1))
    try:
        store.create_project(user_id="u1", name="a", namespace="ns-u1")
        store.create_project(user_id="u1", name="b", namespace="ns-u1")

        result = scheduler.tick(ResourceKind.SANDBOX)
        assert result.kind == ResourceKind.SANDBOX
        assert (result.claimed, result.dispatched, result.failed) == (2, 2, 0)
        assert store.count_resources_by_status(ResourceKind.SANDBOX) == {"STARTING": 2}
        assert store.count_resources_by_status(ResourceKind.DATABASE) == {"CREATING": 2}

        assert scheduler.status_snapshot()["last_ticks"]["sandbox"]["claimed"] == 2
    finally:
        scheduler.stop()


def test_tick_with_nothing_due(store: SQLiteStore) -> None:
    scheduler = _scheduler(store, SimulatedClusterBackend())
    try:
        result = scheduler.tick(ResourceKind.DATABASE)
        assert result.claimed == 0 and result.dispatched == 0
    finally:
        scheduler.stop()


def test_project_lifecycle_scenarios(store: SQLiteStore) -> None:
    backend = SimulatedClusterBackend(settle_after=1)
    scheduler = _scheduler(store, backend)
    try:
        project, resources = store.create_project(user_id="u1", name="Demo", namespace="ns-u1")
        sandbox = next(r for r in resources if r.kind == ResourceKind.SANDBOX)
        database = next(r for r in resources if r.kind == ResourceKind.DATABASE)

        # CREATING / CREATING -> CREATING
        assert _project_status(store, project.project_id) == P.CREATING

        # create, check (not ready), check (ready)
        for _ in range(3):
            scheduler.tick(ResourceKind.SANDBOX)
        assert _status(store, ResourceKind.SANDBOX, sandbox.resource_id) == S.RUNNING
        # RUNNING / CREATING -> CREATING
        assert _project_status(store, project.project_id) == P.CREATING

        scheduler.run_until_idle()
        assert _status(store, ResourceKind.DATABASE, database.resource_id) == S.RUNNING
        # RUNNING / RUNNING -> RUNNING
        assert _project_status(store, project.project_id) == P.RUNNING

        # Sandbox fails while stopping, database keeps running -> ERROR
        store.request_transition(ResourceKind.SANDBOX, sandbox.resource_id, S.STOPPING)
        backend.fail_next("stop", TransientBackendError("connection reset"))
        scheduler.tick(ResourceKind.SANDBOX)
        row = store.get_resource(ResourceKind.SANDBOX, sandbox.resource_id)
        assert row is not None
        assert row.status == S.ERROR and row.failed_intent == Intent.STOP
        assert _status(store, ResourceKind.DATABASE, database.resource_id) == S.RUNNING
        assert _project_status(store, project.project_id) == P.ERROR

        # Backoff keeps the row out of the next ticks.
        assert scheduler.tick(ResourceKind.SANDBOX).claimed == 0
    finally:
        scheduler.stop()


def test_delete_project_reaches_terminated(store: SQLiteStore) -> None:
    scheduler = _scheduler(store, SimulatedClusterBackend(settle_after=1))
    try:
        project, _resources = store.create_project(user_id="u1", name="Demo", namespace="ns-u1")
        scheduler.run_until_idle()
        assert _project_status(store, project.project_id) == P.RUNNING

        store.request_project_transition(project.project_id, S.TERMINATING)
        assert _project_status(store, project.project_id) == P.TERMINATING
        scheduler.run_until_idle()

        assert _project_status(store, project.project_id) == P.TERMINATED
        assert {r.status for r in store.list_resources_for_project(project.project_id)} == {S.TERMINATED}
        # Terminated rows are at rest: nothing left to claim.
        assert all(r.claimed == 0 for r in scheduler.run_once())
    finally:
        scheduler.stop()


def test_abandoned_lease_is_picked_up_after_expiry(store: SQLiteStore) -> None:
    scheduler = _scheduler(store, SimulatedClusterBackend(settle_after=1))
    try:
        store.create_project(user_id="u1", name="Demo", namespace="ns-u1")
        # A worker that claimed the row and then died: its lease ran out a minute ago.
        store.claim_batch(ResourceKind.SANDBOX, limit=10, lease_s=60, now=time.time() - 120)
        assert scheduler.tick(ResourceKind.SANDBOX).claimed == 1

        store.create_project(user_id="u1", name="Other", namespace="ns-u1")
        # A live lease held elsewhere is left alone.
        store.claim_batch(ResourceKind.SANDBOX, limit=10, lease_s=600)
        assert scheduler.tick(ResourceKind.SANDBOX).claimed == 0
    finally:
        scheduler.stop()


def test_batch_parallelism_is_bounded(store: SQLiteStore) -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def slow(_event: ResourceEvent) -> None:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1

    bus = EventBus()
    bus.register(ResourceKind.SANDBOX, Intent.CREATE, slow)
    bus.freeze()
    scheduler = ReconcileScheduler(
        store=store,
        bus=bus,
        config=ReconcilerConfig(batch_size=6, lease_s=60.0, max_concurrency=2, kinds=(ResourceKind.SANDBOX,)),
    )
    try:
        for i in range(6):
            store.create_project(user_id="u1", name=f"p{i}", namespace="ns-u1")
        result = scheduler.tick(ResourceKind.SANDBOX)
        assert result.claimed == 6 and result.dispatched == 6
        assert 1 <= peak <= 2
        # tick() returned only after the whole batch finished.
        assert active == 0
    finally:
        scheduler.stop()


def test_dispatch_failures_do_not_break_the_tick(store: SQLiteStore) -> None:
    def boom(_event: ResourceEvent) -> None:
        raise RuntimeError("listener bug")

    bus = EventBus()
    bus.register(ResourceKind.SANDBOX, Intent.CREATE, boom)
    bus.freeze()
    scheduler = ReconcileScheduler(store=store, bus=bus, config=ReconcilerConfig())
    try:
        store.create_project(user_id="u1", name="Demo", namespace="ns-u1")
        result = scheduler.tick(ResourceKind.SANDBOX)
        assert (result.claimed, result.dispatched, result.failed) == (1, 0, 1)

        # No listener at all for databases: logged, counted, not raised.
        result = scheduler.tick(ResourceKind.DATABASE)
        assert (result.claimed, result.failed) == (1, 1)
    finally:
        scheduler.stop()


def test_background_loop_converges_and_stops(store: SQLiteStore) -> None:
    scheduler = _scheduler(store, SimulatedClusterBackend(settle_after=1))
    project, _resources = store.create_project(user_id="u1", name="Demo", namespace="ns-u1")

    scheduler.start()
    try:
        assert scheduler.running
        deadline = time.time() + 10.0
        while time.time() < deadline and _project_status(store, project.project_id) != P.RUNNING:
            time.sleep(0.05)
        assert _project_status(store, project.project_id) == P.RUNNING

        snap = scheduler.status_snapshot()
        assert snap["running"] is True
        assert snap["kinds"] == ["sandbox", "database"]
    finally:
        scheduler.stop()
    assert not scheduler.running


def test_tick_after_stop_hands_rows_back(store: SQLiteStore) -> None:
    backend = SimulatedClusterBackend(settle_after=1)
    scheduler = _scheduler(store, backend)
    _project, resources = store.create_project(user_id="u1", name="Demo", namespace="ns-u1")
    sandbox = next(r for r in resources if r.kind == ResourceKind.SANDBOX)

    scheduler.stop()

    # Same path as a loop thread caught between its claim and dispatch while stopping.
    result = scheduler.tick(ResourceKind.SANDBOX)
    assert (result.claimed, result.dispatched, result.skipped) == (1, 0, 1)
    row = store.get_resource(ResourceKind.SANDBOX, sandbox.resource_id)
    assert row is not None
    assert row.status == S.CREATING
    assert row.lock_token is None and row.locked_until is None
    assert backend.call_count("create") == 0
