from __future__ import annotations

from engine.errors import TransitionError

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
ROLLED_BACK = "rolled_back"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS}),
    IN_PROGRESS: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset({ROLLED_BACK}),
    FAILED: frozenset({ROLLED_BACK}),
    ROLLED_BACK: frozenset(),
}

TERMINAL_RUN_STATUSES = frozenset({COMPLETED, FAILED})


def normalize_status(status: str) -> str:
    return str(status or "").strip().lower()


def can_transition(from_status: str, to_status: str) -> bool:
    return normalize_status(to_status) in ALLOWED_TRANSITIONS.get(normalize_status(from_status), frozenset())


def assert_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise TransitionError(normalize_status(from_status), normalize_status(to_status))
