from __future__ import annotations

import pytest
from sqlalchemy import func, select

from engine.errors import RollbackGuardError, SchedulingError
from models import Employee, ExecutionAuditLog


def _planned(service, seed) -> str:
    seed.employee("7", "員工", grade=2)
    seed.campaign("42", agree=40, disagree=20)
    seed.candidate("42", "7", current="員工")
    return service.plan_from_campaign("42").executions[0].executionId


def _employee_state(db) -> tuple:
    db.expire_all()
    emp = db.execute(select(Employee).where(Employee.employeeId == "7")).scalar_one()
    return emp.position, emp.grade, emp.positionStartDate


def _audit_count(db) -> int:
    return int(db.execute(select(func.count(ExecutionAuditLog.id))).scalar() or 0)


def test_rollback_restores_completed_change(service, seed, db_session):
    execution_id = _planned(service, seed)
    before = _employee_state(db_session)
    service.run(execution_id)
    assert _employee_state(db_session)[0] == "副店長"
    entries = _audit_count(db_session)

    status = service.rollback(execution_id, "Vote annulled")

    assert status == "rolled_back"
    assert _employee_state(db_session) == before
    row = service.store.require(execution_id)
    assert row.failureReason == "Vote annulled"
    # Restoration bypasses the pipeline.
    assert _audit_count(db_session) == entries


def test_rollback_of_failed_execution_undoes_partial_change(service, seed, db_session):
    execution_id = _planned(service, seed)
    before = _employee_state(db_session)
    row = service.store.require(execution_id)
    row.newGrade = None
    db_session.commit()
    assert service.run(execution_id) == "failed"

    assert service.rollback(execution_id) == "rolled_back"
    assert _employee_state(db_session) == before
    assert service.store.require(execution_id).failureReason == "Manual rollback"


def test_rollback_refuses_pending(service, seed, db_session):
    execution_id = _planned(service, seed)
    before = _employee_state(db_session)

    with pytest.raises(RollbackGuardError) as e:
        service.rollback(execution_id, "x")

    assert e.value.http_status == 409
    assert service.store.require(execution_id).status == "pending"
    assert _employee_state(db_session) == before


def test_rollback_refuses_in_progress(service, seed, db_session):
    execution_id = _planned(service, seed)
    row = service.store.require(execution_id)
    assert service.store.claim(row) is True

    with pytest.raises(RollbackGuardError):
        service.rollback(execution_id, "x")
    assert service.store.require(execution_id).status == "in_progress"


def test_rollback_refuses_failure_without_snapshot(service, seed, db_session):
    execution_id = _planned(service, seed)
    seed.appeal("42")
    assert service.run(execution_id) == "failed"

    with pytest.raises(RollbackGuardError):
        service.rollback(execution_id, "x")
    assert service.store.require(execution_id).status == "failed"


def test_rollback_is_terminal(service, seed):
    execution_id = _planned(service, seed)
    service.run(execution_id)
    service.rollback(execution_id, "first")

    with pytest.raises(RollbackGuardError):
        service.rollback(execution_id, "second")
    assert service.store.require(execution_id).failureReason == "first"


def test_rollback_unknown_execution(service):
    with pytest.raises(SchedulingError):
        service.rollback("EXE-999999", "x")
