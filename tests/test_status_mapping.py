from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import pytest

from src.cluster.errors import ResourceNotFoundError, TransientBackendError, is_not_found
from src.cluster.status_mapping import StatefulSetCounts, database_status_from_phase, sandbox_status_from_replicas
from src.reconcile.types import ResourceStatus
from src.utils.backoff import BackoffPolicy
from src.utils.names import is_valid_cluster_name, make_cluster_name, random_suffix, to_cluster_project_name


S = ResourceStatus


def _counts(spec: int, n: int, *, ready: int | None = None) -> StatefulSetCounts:
    return StatefulSetCounts(
        spec_replicas=spec,
        replicas=n,
        ready_replicas=n if ready is None else ready,
        current_replicas=n,
        updated_replicas=n,
    )


@pytest.mark.parametrize(
    ("counts", "expected"),
    [
        (None, S.TERMINATED),
        (_counts(0, 1), S.STOPPING),
        (_counts(0, 0), S.STOPPED),
        (_counts(1, 1), S.RUNNING),
        (_counts(1, 1, ready=0), S.STARTING),
        (_counts(1, 0), S.STARTING),
    ],
)
def test_sandbox_status_from_replicas(counts: StatefulSetCounts | None, expected: ResourceStatus) -> None:
    assert sandbox_status_from_replicas(counts) == expected


@pytest.mark.parametrize(
    ("phase", "expected"),
    [
        (None, S.TERMINATED),
        ("Creating", S.STARTING),
        ("Updating", S.STARTING),
        ("Running", S.RUNNING),
        ("running", S.RUNNING),
        ("Stopping", S.STOPPING),
        ("Stopped", S.STOPPED),
        ("Deleting", S.TERMINATING),
        ("Failed", S.ERROR),
        ("Abnormal", S.ERROR),
        ("SomethingNew", S.STARTING),
    ],
)
def test_database_status_from_phase(phase: str | None, expected: ResourceStatus) -> None:
    assert database_status_from_phase(phase) == expected


def test_running_database_without_credentials_is_still_starting() -> None:
    assert database_status_from_phase("Running", credentials_ready=False) == S.STARTING


@dataclass
class _Resp:
    status_code: int


class _ApiError(Exception):
    def __init__(self, **attrs: Any) -> None:
        super().__init__("api error")
        for k, v in attrs.items():
            setattr(self, k, v)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ResourceNotFoundError("gone"), True),
        (_ApiError(code=404), True),
        (_ApiError(status_code=404), True),
        (_ApiError(status=404), True),
        (_ApiError(response=_Resp(404)), True),
        (_ApiError(response={"status_code": 404}), True),
        (_ApiError(code=500), False),
        (_ApiError(response=_Resp(409)), False),
        (TransientBackendError("timeout"), False),
    ],
)
def test_is_not_found(error: BaseException, expected: bool) -> None:
    assert is_not_found(error) is expected


def test_cluster_project_name() -> None:
    assert to_cluster_project_name("My Cool_Project!!") == "mycoolproject"
    assert to_cluster_project_name("a" * 30) == "a" * 20
    assert to_cluster_project_name("-abc-") == "abc"
    assert make_cluster_name("", suffix="abcdefgh") == "project-abcdefgh"
    assert re.fullmatch(r"demo-[a-z]{8}", make_cluster_name("Demo"))


def test_random_suffix_and_label_validation() -> None:
    s = random_suffix(8)
    assert len(s) == 8 and s.isalpha() and s.islower()
    assert is_valid_cluster_name("ns-u1")
    assert not is_valid_cluster_name("")
    assert not is_valid_cluster_name("Bad_Name")
    assert not is_valid_cluster_name("-leading")
    assert not is_valid_cluster_name("a" * 64)


def test_backoff_policy() -> None:
    policy = BackoffPolicy(base_s=5.0, factor=2.0, max_s=300.0)
    assert [policy.delay_s(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]
    assert policy.delay_s(0) == 5.0
    assert policy.delay_s(10) == 300.0
    assert policy.delay_s(1, permanent=True) == 300.0
