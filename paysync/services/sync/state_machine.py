from __future__ import annotations

from paysync.db.models import ObjectRunStatus
from paysync.services.sync.errors import InvalidTransitionError

TERMINAL_STATUSES: frozenset[ObjectRunStatus] = frozenset(
    {ObjectRunStatus.COMPLETE, ObjectRunStatus.ERROR}
)
ACTIVE_STATUSES: frozenset[ObjectRunStatus] = frozenset(
    {ObjectRunStatus.PENDING, ObjectRunStatus.RUNNING}
)

# pending may fail directly: stale recovery and skipped claims never pass through running.
ALLOWED_TRANSITIONS: dict[ObjectRunStatus, frozenset[ObjectRunStatus]] = {
    ObjectRunStatus.PENDING: frozenset({ObjectRunStatus.RUNNING, ObjectRunStatus.ERROR}),
    ObjectRunStatus.RUNNING: frozenset({ObjectRunStatus.COMPLETE, ObjectRunStatus.ERROR}),
    ObjectRunStatus.COMPLETE: frozenset(),
    ObjectRunStatus.ERROR: frozenset(),
}


def is_terminal(status: ObjectRunStatus | str) -> bool:
    return ObjectRunStatus(status) in TERMINAL_STATUSES


def can_transition(current: ObjectRunStatus | str, target: ObjectRunStatus | str) -> bool:
    return ObjectRunStatus(target) in ALLOWED_TRANSITIONS[ObjectRunStatus(current)]


def ensure_transition(current: ObjectRunStatus | str, target: ObjectRunStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current=str(current), target=str(target))


def has_claim_capacity(*, running_count: int, max_concurrent: int) -> bool:
    return int(running_count) < max(1, int(max_concurrent))
