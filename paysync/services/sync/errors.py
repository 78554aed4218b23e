from __future__ import annotations


class SyncFailure(Exception):
    """A unit of work failed; the ObjectRun has already been moved to error."""

    def __init__(self, *, object_type: str, run_id: int | None, message: str) -> None:
        super().__init__(message)
        self.object_type = object_type
        self.run_id = run_id
        self.message = message


class UpstreamProtocolViolation(SyncFailure):
    """The source reported more pages but returned no items."""


class TransientSyncError(SyncFailure):
    """Network or storage failure while fetching or writing a page."""


class UnknownObjectTypeError(ValueError):
    def __init__(self, object_type: str) -> None:
        super().__init__(f"Unknown object type: {object_type!r}.")
        self.object_type = object_type


class InvalidTransitionError(RuntimeError):
    def __init__(self, *, current: str, target: str) -> None:
        super().__init__(f"ObjectRun cannot move from {current!r} to {target!r}.")
        self.current = current
        self.target = target


class RunNotFoundError(LookupError):
    def __init__(self, run_id: int) -> None:
        super().__init__(f"Sync run {run_id} does not exist.")
        self.run_id = run_id
