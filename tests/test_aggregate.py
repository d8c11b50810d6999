from __future__ import annotations

import itertools

import pytest

from src.reconcile.aggregate import aggregate
from src.reconcile.types import ProjectStatus, ResourceStatus


S = ResourceStatus
P = ProjectStatus


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([S.RUNNING, S.ERROR], P.ERROR),
        ([S.CREATING, S.ERROR], P.ERROR),
        ([S.CREATING, S.RUNNING], P.CREATING),
        ([S.CREATING, S.CREATING], P.CREATING),
        ([S.RUNNING, S.RUNNING], P.RUNNING),
        ([S.STOPPED, S.STOPPED], P.STOPPED),
        ([S.TERMINATED, S.TERMINATED], P.TERMINATED),
        ([S.RUNNING, S.STARTING], P.STARTING),
        ([S.STOPPED, S.STOPPING], P.STOPPING),
        ([S.TERMINATED, S.TERMINATING], P.TERMINATING),
        ([S.RUNNING, S.STOPPED], P.PARTIAL),
        ([S.STARTING, S.STOPPING], P.PARTIAL),
        ([S.RUNNING, S.TERMINATED], P.PARTIAL),
        ([S.RUNNING], P.RUNNING),
    ],
)
def test_precedence_table(statuses: list[ResourceStatus], expected: ProjectStatus) -> None:
    assert aggregate(statuses) == expected


def test_order_and_multiplicity_do_not_matter() -> None:
    pool = [S.RUNNING, S.STARTING, S.STOPPED, S.ERROR, S.CREATING, S.TERMINATING]
    for size in (2, 3):
        for combo in itertools.combinations(pool, size):
            expected = aggregate(combo)
            for perm in itertools.permutations(combo):
                assert aggregate(perm) == expected
            assert aggregate(list(combo) + [combo[0]]) == expected


def test_empty_children_yield_none() -> None:
    assert aggregate([]) is None


def test_error_wins_over_everything() -> None:
    assert aggregate([S.CREATING, S.RUNNING, S.STOPPED, S.ERROR]) == P.ERROR
