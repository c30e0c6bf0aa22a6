from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from engine import state
from engine.errors import SchedulingError, TransitionError
from engine.results import (
    EmployeeSnapshot,
    NotificationAttempt,
    StepResult,
    decode_notifications,
    decode_snapshot,
    decode_step_results,
    encode_step_results,
)
from models import IdCounter, PositionChangeExecution
from utils import ApiError, iso_utc_now

EXECUTION_ID_PREFIX = "EXE-"
EXECUTION_ID_PAD = 6


def _id_counter_next(db, key: str, initial: int) -> int:
    key_u = str(key or "").strip()
    if not key_u:
        raise ApiError("INTERNAL", "Missing id counter key")

    row = (
        db.execute(select(IdCounter).where(IdCounter.key == key_u).with_for_update(of=IdCounter))
        .scalars()
        .first()
    )
    if row:
        n = int(row.nextValue or 1)
        row.nextValue = n + 1
        return n

    # SessionLocal runs with autoflush=False; flush so later reads in this transaction see the counter.
    counter = IdCounter(key=key_u, nextValue=int(initial) + 1)
    db.add(counter)
    db.flush()
    return int(initial)


class ExecutionStore:
    """Persistence and lifecycle writes for position-change executions."""

    def __init__(self, db, *, clock=iso_utc_now):
        self.db = db
        self._clock = clock

    # -- reads -----------------------------------------------------------

    def get(self, execution_id: str) -> Optional[PositionChangeExecution]:
        return self.db.execute(
            select(PositionChangeExecution).where(PositionChangeExecution.executionId == str(execution_id or ""))
        ).scalar_one_or_none()

    def require(self, execution_id: str) -> PositionChangeExecution:
        row = self.get(execution_id)
        if not row:
            raise SchedulingError(f"Execution not found: {execution_id}", code="EXECUTION_NOT_FOUND")
        return row

    def find_by_campaign(self, campaign_id: str) -> list[PositionChangeExecution]:
        q = (
            select(PositionChangeExecution)
            .where(PositionChangeExecution.campaignId == str(campaign_id or ""))
            .order_by(PositionChangeExecution.executionId.asc())
        )
        return list(self.db.execute(q).scalars().all())

    def due(self, now_iso: str) -> list[PositionChangeExecution]:
        q = (
            select(PositionChangeExecution)
            .where(PositionChangeExecution.status == state.PENDING)
            .where(PositionChangeExecution.scheduledTime != "")
            .where(PositionChangeExecution.scheduledTime <= now_iso)
            .order_by(PositionChangeExecution.scheduledTime.asc(), PositionChangeExecution.executionId.asc())
        )
        return list(self.db.execute(q).scalars().all())

    def list_pending(self) -> list[PositionChangeExecution]:
        q = (
            select(PositionChangeExecution)
            .where(PositionChangeExecution.status == state.PENDING)
            .order_by(PositionChangeExecution.scheduledTime.asc(), PositionChangeExecution.executionId.asc())
        )
        return list(self.db.execute(q).scalars().all())

    def stalled(self, started_before_iso: str) -> list[PositionChangeExecution]:
        q = (
            select(PositionChangeExecution)
            .where(PositionChangeExecution.status == state.IN_PROGRESS)
            .where(PositionChangeExecution.actualExecutionTime <= started_before_iso)
            .order_by(PositionChangeExecution.actualExecutionTime.asc())
        )
        return list(self.db.execute(q).scalars().all())

    def employee_busy(self, employee_id: str, *, exclude_execution_id: str = "") -> bool:
        q = (
            select(func.count(PositionChangeExecution.executionId))
            .where(PositionChangeExecution.employeeId == str(employee_id or ""))
            .where(PositionChangeExecution.status == state.IN_PROGRESS)
        )
        if exclude_execution_id:
            q = q.where(PositionChangeExecution.executionId != exclude_execution_id)
        return int(self.db.execute(q).scalar() or 0) > 0

    # -- creation --------------------------------------------------------

    def next_execution_id(self) -> str:
        existing = self.db.execute(select(PositionChangeExecution.executionId)).scalars().all()
        max_num = 0
        for v in existing:
            s = str(v or "")
            if not s.startswith(EXECUTION_ID_PREFIX):
                continue
            try:
                n = int(s[len(EXECUTION_ID_PREFIX) :])
            except Exception:
                continue
            max_num = max(max_num, n)
        n = _id_counter_next(self.db, "EXECUTION", max_num + 1)
        return f"{EXECUTION_ID_PREFIX}{str(n).zfill(EXECUTION_ID_PAD)}"

    def create(
        self,
        *,
        campaign_id: str,
        employee_id: str,
        change_type: str,
        old_position: str,
        new_position: str,
        old_grade: Optional[int],
        new_grade: Optional[int],
        scheduled_time: str,
    ) -> PositionChangeExecution:
        now = self._clock()
        row = PositionChangeExecution(
            executionId=self.next_execution_id(),
            campaignId=str(campaign_id or ""),
            employeeId=str(employee_id or ""),
            changeType=str(change_type or ""),
            oldPosition=str(old_position or ""),
            newPosition=str(new_position or ""),
            oldGrade=old_grade,
            newGrade=new_grade,
            status=state.PENDING,
            scheduledTime=str(scheduled_time or ""),
            actualExecutionTime="",
            stepResultsJson="{}",
            rollbackSnapshotJson="",
            approvedBy="",
            executedBy="SYSTEM",
            failureReason="",
            notificationsSentJson="[]",
            createdAt=now,
            updatedAt=now,
        )
        self.db.add(row)
        self.db.flush()
        return row

    # -- lifecycle -------------------------------------------------------

    def claim(self, execution: PositionChangeExecution) -> bool:
        """
        pending -> in_progress as a conditional write. Returns False (record stays
        pending) while another execution for the same employee is in flight.
        """

        if not execution.can_execute():
            raise TransitionError(execution.status, state.IN_PROGRESS)
        if self.employee_busy(execution.employeeId, exclude_execution_id=execution.executionId):
            return False

        now = self._clock()
        res = self.db.execute(
            update(PositionChangeExecution)
            .where(PositionChangeExecution.executionId == execution.executionId)
            .where(PositionChangeExecution.status == state.PENDING)
            .values(status=state.IN_PROGRESS, actualExecutionTime=now, updatedAt=now)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            self.db.rollback()
            self.db.refresh(execution)
            raise TransitionError(execution.status, state.IN_PROGRESS)
        self.db.commit()
        self.db.refresh(execution)
        return True

    def current_status(self, execution_id: str) -> str:
        """Committed status, read past any stale copy held by this session."""

        return str(
            self.db.execute(
                select(PositionChangeExecution.status).where(PositionChangeExecution.executionId == execution_id)
            ).scalar()
            or ""
        )

    def set_status(self, execution: PositionChangeExecution, to_status: str, **fields: Any) -> PositionChangeExecution:
        """
        Conditional write: lands only while the stored status still equals the one
        this session last saw. Another session's transition raises TransitionError.
        """

        from_status = execution.status
        state.assert_transition(from_status, to_status)
        values = dict(fields, status=state.normalize_status(to_status), updatedAt=self._clock())
        res = self.db.execute(
            update(PositionChangeExecution)
            .where(PositionChangeExecution.executionId == execution.executionId)
            .where(PositionChangeExecution.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            raise TransitionError(self.current_status(execution.executionId) or from_status, values["status"])
        for k, v in values.items():
            set_committed_value(execution, k, v)
        return execution

    def prepare_manual_run(self, execution: PositionChangeExecution, *, approved_by: str) -> PositionChangeExecution:
        if not execution.can_execute():
            raise TransitionError(execution.status, state.IN_PROGRESS)
        who = str(approved_by or "").strip()
        if who:
            execution.approvedBy = who
            execution.executedBy = f"ADMIN_{who}"
            execution.updatedAt = self._clock()
        return execution

    # -- typed payloads --------------------------------------------------

    def step_results(self, execution: PositionChangeExecution) -> dict[str, StepResult]:
        return decode_step_results(execution.stepResultsJson)

    def merge_step_result(self, execution: PositionChangeExecution, step: str, result: StepResult) -> None:
        results = self.step_results(execution)
        results[step] = result
        execution.stepResultsJson = encode_step_results(results)
        execution.updatedAt = self._clock()

    def snapshot(self, execution: PositionChangeExecution) -> Optional[EmployeeSnapshot]:
        return decode_snapshot(execution.rollbackSnapshotJson)

    def record_snapshot(self, execution: PositionChangeExecution, snapshot: EmployeeSnapshot) -> None:
        execution.rollbackSnapshotJson = json.dumps(snapshot.to_dict(), ensure_ascii=False)
        execution.updatedAt = self._clock()
        # Must be durable before any mutating step runs.
        self.db.commit()

    def notifications(self, execution: PositionChangeExecution) -> list[NotificationAttempt]:
        return decode_notifications(execution.notificationsSentJson)

    def append_notifications(self, execution: PositionChangeExecution, attempts: list[NotificationAttempt]) -> None:
        existing = [a.to_dict() for a in self.notifications(execution)]
        existing.extend(a.to_dict() for a in attempts)
        execution.notificationsSentJson = json.dumps(existing, ensure_ascii=False)
        execution.updatedAt = self._clock()

    # -- queries for callers ---------------------------------------------

    def list_executions(self, filters: dict[str, Any], *, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        page = max(1, int(page or 1))
        page_size = max(1, min(200, int(page_size or 20)))

        q = select(PositionChangeExecution)
        cq = select(func.count(PositionChangeExecution.executionId))
        for col, key in (
            (PositionChangeExecution.status, "status"),
            (PositionChangeExecution.employeeId, "employeeId"),
            (PositionChangeExecution.changeType, "changeType"),
            (PositionChangeExecution.campaignId, "campaignId"),
        ):
            v = str((filters or {}).get(key) or "").strip()
            if v:
                q = q.where(col == v)
                cq = cq.where(col == v)

        total = int(self.db.execute(cq).scalar() or 0)
        rows = (
            self.db.execute(
                q.order_by(PositionChangeExecution.createdAt.desc(), PositionChangeExecution.executionId.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        return {
            "items": list(rows),
            "page": page,
            "pageSize": page_size,
            "total": total,
            "totalPages": (total + page_size - 1) // page_size,
        }

    def statistics(self, *, date_from: str = "", date_to: str = "") -> dict[str, Any]:
        def _scoped(q):
            if date_from:
                q = q.where(PositionChangeExecution.createdAt >= date_from)
            if date_to:
                q = q.where(PositionChangeExecution.createdAt <= date_to)
            return q

        by_status = {s: 0 for s in state.ALLOWED_TRANSITIONS}
        q = _scoped(
            select(PositionChangeExecution.status, func.count(PositionChangeExecution.executionId)).group_by(
                PositionChangeExecution.status
            )
        )
        for status, count in self.db.execute(q).all():
            by_status[str(status)] = int(count or 0)
        total = sum(by_status.values())

        q2 = _scoped(
            select(
                PositionChangeExecution.changeType,
                PositionChangeExecution.status,
                func.count(PositionChangeExecution.executionId),
            ).group_by(PositionChangeExecution.changeType, PositionChangeExecution.status)
        )
        change_type_stats = [
            {"changeType": ct, "status": st, "count": int(c or 0)}
            for ct, st, c in self.db.execute(q2.order_by(PositionChangeExecution.changeType.asc())).all()
        ]

        q3 = _scoped(select(PositionChangeExecution).where(PositionChangeExecution.status == state.FAILED))
        recent_failures = (
            self.db.execute(q3.order_by(PositionChangeExecution.createdAt.desc()).limit(5)).scalars().all()
        )

        def _rate(n: int) -> float:
            return round(n / total * 100, 2) if total else 0.0

        return {
            "summary": {
                "totalExecutions": total,
                "pendingExecutions": by_status[state.PENDING],
                "inProgressExecutions": by_status[state.IN_PROGRESS],
                "completedExecutions": by_status[state.COMPLETED],
                "failedExecutions": by_status[state.FAILED],
                "rolledBackExecutions": by_status[state.ROLLED_BACK],
                "successRate": _rate(by_status[state.COMPLETED]),
                "failureRate": _rate(by_status[state.FAILED]),
            },
            "changeTypeStats": change_type_stats,
            "recentFailures": list(recent_failures),
        }


def serialize_execution(row: PositionChangeExecution) -> dict[str, Any]:
    snapshot = decode_snapshot(row.rollbackSnapshotJson)
    return {
        "executionId": row.executionId,
        "campaignId": row.campaignId,
        "employeeId": row.employeeId,
        "changeType": row.changeType,
        "oldPosition": row.oldPosition or "",
        "newPosition": row.newPosition or "",
        "oldGrade": row.oldGrade,
        "newGrade": row.newGrade,
        "status": row.status,
        "scheduledTime": row.scheduledTime or "",
        "actualExecutionTime": row.actualExecutionTime or "",
        "stepResults": {k: v.to_dict() for k, v in decode_step_results(row.stepResultsJson).items()},
        "rollbackSnapshot": snapshot.to_dict() if snapshot else None,
        "approvedBy": row.approvedBy or "",
        "executedBy": row.executedBy or "",
        "failureReason": row.failureReason or "",
        "notificationsSent": [a.to_dict() for a in decode_notifications(row.notificationsSentJson)],
        "createdAt": row.createdAt or "",
        "updatedAt": row.updatedAt or "",
    }
