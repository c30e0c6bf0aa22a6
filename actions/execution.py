from __future__ import annotations

from flask import current_app, has_app_context

from actions.helpers import append_audit, page_args, require_text
from engine.audit import serialize_audit_entry
from engine.scheduler import ExecutionScheduler
from engine.service import ExecutionService, build_service
from engine.store import serialize_execution
from utils import ApiError, AuthContext


def _service(db, cfg) -> ExecutionService:
    if has_app_context():
        factory = current_app.extensions.get("execution_service_factory")
        if factory is not None:
            return factory(db)
    return build_service(db, cfg)


def execution_plan(data, auth: AuthContext | None, db, cfg):
    campaign_id = require_text(data, "campaignId")
    outcome = _service(db, cfg).plan_from_campaign(campaign_id)

    if outcome.created:
        append_audit(
            db,
            entityType="CAMPAIGN",
            entityId=campaign_id,
            action="EXECUTION_PLAN",
            stageTag="EXECUTION_PLANNED",
            actor=auth,
            remark=outcome.reason,
            meta={"executionIds": [r.executionId for r in outcome.executions]},
        )

    return {
        "executed": outcome.executed,
        "created": outcome.created,
        "reason": outcome.reason,
        "executions": [serialize_execution(r) for r in outcome.executions],
    }


def execution_run(data, auth: AuthContext | None, db, cfg):
    execution_id = require_text(data, "executionId")
    approved_by = str(data.get("adminId") or "").strip() or (auth.userId if auth else "")

    service = _service(db, cfg)
    status = service.execute_now(execution_id, approved_by=approved_by)
    row = service.store.require(execution_id)

    append_audit(
        db,
        entityType="EXECUTION",
        entityId=execution_id,
        action="EXECUTION_RUN",
        stageTag="EXECUTION_MANUAL",
        actor=auth,
        toState=status,
        remark=row.failureReason or "",
    )
    return serialize_execution(row)


def execution_rollback(data, auth: AuthContext | None, db, cfg):
    execution_id = require_text(data, "executionId")
    reason = str(data.get("reason") or "").strip()

    service = _service(db, cfg)
    status = service.rollback(execution_id, reason)
    row = service.store.require(execution_id)

    append_audit(
        db,
        entityType="EXECUTION",
        entityId=execution_id,
        action="EXECUTION_ROLLBACK",
        stageTag="EXECUTION_ROLLED_BACK",
        actor=auth,
        toState=status,
        remark=row.failureReason or "",
    )
    return serialize_execution(row)


def execution_pending(data, auth: AuthContext | None, db, cfg):
    rows = _service(db, cfg).list_pending()
    return {"items": [serialize_execution(r) for r in rows], "total": len(rows)}


def execution_statistics(data, auth: AuthContext | None, db, cfg):
    return _service(db, cfg).get_statistics(
        {"dateFrom": data.get("dateFrom"), "dateTo": data.get("dateTo")}
    )


def execution_list(data, auth: AuthContext | None, db, cfg):
    page, page_size = page_args(data)
    filters = {k: data.get(k) for k in ("status", "employeeId", "changeType", "campaignId")}
    return _service(db, cfg).list_executions(filters, page=page, page_size=page_size)


def execution_get(data, auth: AuthContext | None, db, cfg):
    return _service(db, cfg).get_execution(require_text(data, "executionId"))


def execution_audit_logs(data, auth: AuthContext | None, db, cfg):
    entries = _service(db, cfg).audit_trail(require_text(data, "executionId"))
    return {"items": [serialize_audit_entry(e) for e in entries], "total": len(entries)}


def execution_tick(data, auth: AuthContext | None, db, cfg):
    scheduler: ExecutionScheduler | None = None
    if has_app_context():
        scheduler = current_app.extensions.get("execution_scheduler")
    if scheduler is None:
        raise ApiError("INTERNAL", "Scheduler not configured")
    return scheduler.tick().to_dict()
