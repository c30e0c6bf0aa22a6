from __future__ import annotations

import logging

from engine import state
from engine.collaborators import EmployeeDirectory
from engine.errors import RollbackGuardError
from engine.store import ExecutionStore

log = logging.getLogger(__name__)

DEFAULT_ROLLBACK_REASON = "Manual rollback"


class RollbackManager:
    """
    Restores the pre-change snapshot straight onto the employee record.

    Bypasses the step pipeline, so no audit entries are written for the
    restoration. Notifications sent by the original run are not retracted.
    """

    def __init__(self, db, *, store: ExecutionStore, employees: EmployeeDirectory):
        self.db = db
        self.store = store
        self.employees = employees

    def rollback(self, execution_id: str, reason: str = "") -> str:
        execution = self.store.require(execution_id)

        if not execution.can_rollback():
            if execution.status not in state.TERMINAL_RUN_STATUSES:
                raise RollbackGuardError(f"Execution {execution_id} cannot be rolled back from status {execution.status}")
            raise RollbackGuardError(f"Execution {execution_id} has no rollback snapshot")

        snapshot = self.store.snapshot(execution)
        if snapshot is None:
            raise RollbackGuardError(f"Execution {execution_id} has an unreadable rollback snapshot")

        why = str(reason or "").strip() or DEFAULT_ROLLBACK_REASON
        try:
            self.employees.update_employee(execution.employeeId, snapshot.employee_fields())
            self.store.set_status(execution, state.ROLLED_BACK, failureReason=why)
            self.db.commit()
        except Exception:
            self.db.rollback()
            log.exception("rollback failed execution=%s", execution_id)
            raise

        log.info("rollback completed execution=%s reason=%s", execution_id, why)
        return execution.status
