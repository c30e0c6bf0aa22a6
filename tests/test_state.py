from __future__ import annotations

import itertools

import pytest

from engine import state
from engine.errors import TransitionError
from models import PositionChangeExecution

ALLOWED = {
    ("pending", "in_progress"),
    ("in_progress", "completed"),
    ("in_progress", "failed"),
    ("completed", "rolled_back"),
    ("failed", "rolled_back"),
}

STATUSES = ("pending", "in_progress", "completed", "failed", "rolled_back")


def test_only_lifecycle_transitions_are_allowed():
    for a, b in itertools.product(STATUSES, STATUSES):
        assert state.can_transition(a, b) is ((a, b) in ALLOWED), (a, b)


def test_assert_transition_raises_conflict():
    with pytest.raises(TransitionError) as e:
        state.assert_transition("completed", "pending")
    assert e.value.code == "CONFLICT"
    assert "completed -> pending" in e.value.message


def test_unknown_status_cannot_move():
    assert state.can_transition("archived", "pending") is False
    assert state.can_transition("pending", "archived") is False


def test_predicates_look_at_status_only():
    row = PositionChangeExecution(status="pending", rollbackSnapshotJson="")
    assert row.can_execute() is True
    assert row.can_rollback() is False

    row.status = "completed"
    assert row.can_execute() is False
    assert row.can_rollback() is False

    row.rollbackSnapshotJson = '{"employeeId": "7"}'
    assert row.can_rollback() is True

    row.status = "rolled_back"
    assert row.can_rollback() is False


def test_store_rejects_illegal_status_write(service, seed):
    seed.employee("7", "員工", grade=2)
    seed.campaign("42", agree=1)
    seed.candidate("42", "7", current="員工")
    row = service.plan_from_campaign("42").executions[0]

    with pytest.raises(TransitionError):
        service.store.set_status(row, "completed")
    assert row.status == "pending"
