from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select

from engine.errors import AuditFinalizedError
from models import ExecutionAuditLog
from utils import iso_utc_now, parse_datetime_maybe, parse_json_maybe, safe_json_string


def _duration_ms(start_ts: str, end_ts: str) -> Optional[int]:
    start_dt = parse_datetime_maybe(start_ts, app_timezone="UTC") if start_ts else None
    end_dt = parse_datetime_maybe(end_ts, app_timezone="UTC") if end_ts else None
    if not start_dt or not end_dt:
        return None
    return max(0, int((end_dt - start_dt).total_seconds() * 1000))


class AuditLogStore:
    """
    Append-only step log. An entry is written as `started` and finalized exactly
    once as `completed` or `failed`; finalized entries are never touched again.
    """

    def __init__(self, db, *, clock=iso_utc_now):
        self.db = db
        self._clock = clock

    def create_log(self, execution_id: str, step: str) -> ExecutionAuditLog:
        entry = ExecutionAuditLog(
            executionId=str(execution_id or ""),
            step=str(step or ""),
            status="started",
            startTime=self._clock(),
            endTime="",
            durationMs=None,
            resultJson="",
            errorMessage="",
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def _finalize(self, entry: ExecutionAuditLog, status: str) -> None:
        if entry.is_finalized:
            raise AuditFinalizedError(entry.id)
        entry.status = status
        entry.endTime = self._clock()
        entry.durationMs = _duration_ms(entry.startTime, entry.endTime)

    def complete(self, entry: ExecutionAuditLog, result: Any = None) -> ExecutionAuditLog:
        self._finalize(entry, "completed")
        if result is not None:
            payload = result.to_dict() if hasattr(result, "to_dict") else result
            entry.resultJson = safe_json_string(payload, "{}")
        return entry

    def fail(self, entry: ExecutionAuditLog, error: str) -> ExecutionAuditLog:
        self._finalize(entry, "failed")
        entry.errorMessage = str(error or "")
        return entry

    def logs_for_execution(self, execution_id: str) -> list[ExecutionAuditLog]:
        q = (
            select(ExecutionAuditLog)
            .where(ExecutionAuditLog.executionId == str(execution_id or ""))
            .order_by(ExecutionAuditLog.startTime.asc(), ExecutionAuditLog.id.asc())
        )
        return list(self.db.execute(q).scalars().all())

    def failed_steps(self, limit: int = 50) -> list[ExecutionAuditLog]:
        q = (
            select(ExecutionAuditLog)
            .where(ExecutionAuditLog.status == "failed")
            .order_by(ExecutionAuditLog.startTime.desc(), ExecutionAuditLog.id.desc())
            .limit(max(1, int(limit)))
        )
        return list(self.db.execute(q).scalars().all())

    def step_statistics(self, date_from: str = "", date_to: str = "") -> list[dict[str, Any]]:
        q = select(
            ExecutionAuditLog.step,
            ExecutionAuditLog.status,
            func.count(ExecutionAuditLog.id),
            func.avg(ExecutionAuditLog.durationMs),
            func.min(ExecutionAuditLog.durationMs),
            func.max(ExecutionAuditLog.durationMs),
        )
        if date_from:
            q = q.where(ExecutionAuditLog.startTime >= date_from)
        if date_to:
            q = q.where(ExecutionAuditLog.startTime <= date_to)
        q = q.group_by(ExecutionAuditLog.step, ExecutionAuditLog.status).order_by(ExecutionAuditLog.step.asc())

        out: list[dict[str, Any]] = []
        for step, status, count, avg_ms, min_ms, max_ms in self.db.execute(q).all():
            out.append(
                {
                    "step": step,
                    "status": status,
                    "count": int(count or 0),
                    "avgDurationMs": round(float(avg_ms), 2) if avg_ms is not None else None,
                    "minDurationMs": min_ms,
                    "maxDurationMs": max_ms,
                }
            )
        return out


def serialize_audit_entry(entry: ExecutionAuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "executionId": entry.executionId,
        "step": entry.step,
        "status": entry.status,
        "startTime": entry.startTime or "",
        "endTime": entry.endTime or "",
        "durationMs": entry.durationMs,
        "result": parse_json_maybe(entry.resultJson, None),
        "error": entry.errorMessage or "",
    }
