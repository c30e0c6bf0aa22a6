from __future__ import annotations

import logging
from typing import Callable

from engine import state
from engine.audit import AuditLogStore
from engine.collaborators import AppealGate, EmployeeDirectory, NotificationGateway, VotingResultProvider
from engine.errors import StepExecutionError, TransitionError
from engine.hierarchy import PositionLadder
from engine.steps import MUTATING_STEPS, PIPELINE, StepContext
from engine.store import ExecutionStore
from models import PositionChangeExecution
from utils import ApiError, iso_utc_now, now_monotonic

log = logging.getLogger(__name__)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, ApiError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class Orchestrator:
    """
    Runs the fixed step pipeline for one execution.

    Every step is bracketed by an audit entry and committed on its own, so a
    failure leaves earlier steps applied (the pipeline is not atomic) and the
    audit trail intact. A failing step's own uncommitted writes are discarded.
    """

    def __init__(
        self,
        db,
        *,
        store: ExecutionStore,
        audit: AuditLogStore,
        campaigns: VotingResultProvider,
        employees: EmployeeDirectory,
        appeals: AppealGate,
        notifier: NotificationGateway,
        ladder: PositionLadder,
        clock: Callable[[], str] = iso_utc_now,
        management_chat_id: str = "",
        notification_failure_aborts: bool = True,
        step_warn_seconds: float = 30.0,
    ):
        self.db = db
        self.store = store
        self.audit = audit
        self.campaigns = campaigns
        self.employees = employees
        self.appeals = appeals
        self.notifier = notifier
        self.ladder = ladder
        self.clock = clock
        self.management_chat_id = management_chat_id
        self.notification_failure_aborts = notification_failure_aborts
        self.step_warn_seconds = step_warn_seconds

    def _context(self, execution: PositionChangeExecution) -> StepContext:
        return StepContext(
            execution=execution,
            store=self.store,
            campaigns=self.campaigns,
            employees=self.employees,
            appeals=self.appeals,
            notifier=self.notifier,
            ladder=self.ladder,
            clock=self.clock,
            management_chat_id=self.management_chat_id,
            notification_failure_aborts=self.notification_failure_aborts,
        )

    def run(self, execution_id: str) -> str:
        execution = self.store.require(execution_id)
        if not self.store.claim(execution):
            log.info("execution=%s deferred: employee=%s has a change in progress", execution_id, execution.employeeId)
            return execution.status

        log.info(
            "execution=%s started employee=%s %s -> %s",
            execution.executionId,
            execution.employeeId,
            execution.oldPosition,
            execution.newPosition,
        )
        ctx = self._context(execution)

        for name, handler in PIPELINE:
            if not self._still_running(execution, name):
                return execution.status
            entry = self.audit.create_log(execution.executionId, name)
            self.db.commit()
            started = now_monotonic()
            try:
                if name in MUTATING_STEPS and self.store.snapshot(execution) is None:
                    raise StepExecutionError(name, "Rollback snapshot missing; refusing to mutate employee")
                result = handler(ctx)
            except Exception as e:
                self.db.rollback()
                message = _error_message(e)
                log.exception("execution=%s step=%s failed", execution.executionId, name)
                self.audit.fail(entry, message)
                attempts = getattr(e, "attempts", None)
                if attempts:
                    self.store.append_notifications(execution, attempts)
                self._finish(execution, state.FAILED, failureReason=f"{name}: {message}")
                return execution.status

            elapsed = now_monotonic() - started
            if self.step_warn_seconds and elapsed > self.step_warn_seconds:
                log.warning("execution=%s step=%s took %.1fs", execution.executionId, name, elapsed)

            self.audit.complete(entry, result)
            self.store.merge_step_result(execution, name, result)
            self.db.commit()
            log.info("execution=%s step=%s completed", execution.executionId, name)

        if self._finish(execution, state.COMPLETED, failureReason=""):
            log.info("execution=%s completed", execution.executionId)
        return execution.status

    def _still_running(self, execution: PositionChangeExecution, step: str) -> bool:
        current = self.store.current_status(execution.executionId)
        if current == state.IN_PROGRESS:
            return True
        log.warning("execution=%s moved to %s by another writer; stopping before %s", execution.executionId, current, step)
        self.db.refresh(execution)
        return False

    def _finish(self, execution: PositionChangeExecution, to_status: str, **fields) -> bool:
        """Write the terminal status; a record already moved elsewhere keeps that status."""

        try:
            self.store.set_status(execution, to_status, **fields)
        except TransitionError as e:
            log.warning("execution=%s not marked %s: %s", execution.executionId, to_status, e.message)
            self.db.refresh(execution)
            self.db.commit()
            return False
        self.db.commit()
        return True

    def record_unexpected_failure(self, execution_id: str, exc: Exception) -> None:
        """Poller safety net: an error outside the per-step handling fails an in-flight record."""

        self.db.rollback()
        execution = self.store.get(execution_id)
        if not execution or execution.status != state.IN_PROGRESS:
            return
        self.store.set_status(execution, state.FAILED, failureReason=f"Unexpected error: {_error_message(exc)}")
        self.db.commit()
