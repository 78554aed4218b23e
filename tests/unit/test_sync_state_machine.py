from __future__ import annotations

import pytest

from paysync.db.models import ObjectRunStatus
from paysync.services.sync.errors import InvalidTransitionError
from paysync.services.sync.state_machine import (
    can_transition,
    ensure_transition,
    has_claim_capacity,
    is_terminal,
)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (ObjectRunStatus.PENDING, ObjectRunStatus.RUNNING),
        (ObjectRunStatus.PENDING, ObjectRunStatus.ERROR),
        (ObjectRunStatus.RUNNING, ObjectRunStatus.COMPLETE),
        (ObjectRunStatus.RUNNING, ObjectRunStatus.ERROR),
    ],
)
def test_allowed_transitions(current: ObjectRunStatus, target: ObjectRunStatus) -> None:
    assert can_transition(current, target) is True
    ensure_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (ObjectRunStatus.PENDING, ObjectRunStatus.COMPLETE),
        (ObjectRunStatus.COMPLETE, ObjectRunStatus.RUNNING),
        (ObjectRunStatus.COMPLETE, ObjectRunStatus.PENDING),
        (ObjectRunStatus.ERROR, ObjectRunStatus.RUNNING),
        (ObjectRunStatus.ERROR, ObjectRunStatus.COMPLETE),
        (ObjectRunStatus.RUNNING, ObjectRunStatus.PENDING),
    ],
)
def test_rejected_transitions_raise(current: ObjectRunStatus, target: ObjectRunStatus) -> None:
    assert can_transition(current, target) is False
    with pytest.raises(InvalidTransitionError):
        ensure_transition(current, target)


def test_terminal_statuses_accept_plain_strings() -> None:
    assert is_terminal("complete") is True
    assert is_terminal("error") is True
    assert is_terminal("pending") is False
    assert is_terminal(ObjectRunStatus.RUNNING) is False


def test_claim_capacity_respects_cap_and_floors_at_one() -> None:
    assert has_claim_capacity(running_count=4, max_concurrent=5) is True
    assert has_claim_capacity(running_count=5, max_concurrent=5) is False
    assert has_claim_capacity(running_count=0, max_concurrent=0) is True
    assert has_claim_capacity(running_count=1, max_concurrent=0) is False
