from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config import Config
from engine import state
from engine.audit import AuditLogStore, serialize_audit_entry
from engine.collaborators import NotificationGateway, SqlAppealGate, SqlEmployeeDirectory, SqlVotingResultProvider
from engine.errors import TransitionError
from engine.hierarchy import PositionLadder, load_ladder
from engine.orchestrator import Orchestrator
from engine.planner import ExecutionPlanner, PlanOutcome
from engine.rollback import RollbackManager
from engine.schedule import resolve_timezone
from engine.store import ExecutionStore, serialize_execution
from models import ExecutionAuditLog, PositionChangeExecution
from utils import ApiError, parse_datetime_maybe, to_iso_utc, utc_now

log = logging.getLogger(__name__)

STALLED_REASON = "Execution stalled"


class ExecutionService:
    """The operations callers use: plan, run, roll back, and report on executions."""

    def __init__(
        self,
        db,
        *,
        store: ExecutionStore,
        audit: AuditLogStore,
        planner: ExecutionPlanner,
        orchestrator: Orchestrator,
        rollback_manager: RollbackManager,
        now: Callable[[], datetime] = utc_now,
        app_timezone: str = "Asia/Taipei",
    ):
        self.db = db
        self.store = store
        self.audit = audit
        self.planner = planner
        self.orchestrator = orchestrator
        self.rollback_manager = rollback_manager
        self._now = now
        self.app_timezone = app_timezone

    def plan_from_campaign(self, campaign_id: str) -> PlanOutcome:
        try:
            outcome = self.planner.plan_from_campaign(campaign_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return outcome

    def execute_now(self, execution_id: str, approved_by: str = "") -> str:
        execution = self.store.require(execution_id)
        self.store.prepare_manual_run(execution, approved_by=approved_by)
        self.db.commit()
        return self.orchestrator.run(execution.executionId)

    def run(self, execution_id: str) -> str:
        return self.orchestrator.run(execution_id)

    def rollback(self, execution_id: str, reason: str = "") -> str:
        return self.rollback_manager.rollback(execution_id, reason)

    def due(self) -> list[PositionChangeExecution]:
        return self.store.due(to_iso_utc(self._now()))

    def list_pending(self) -> list[PositionChangeExecution]:
        return self.store.list_pending()

    def recover_stalled(self, stuck_minutes: int) -> list[str]:
        """Fail in_progress records older than the threshold so they can be rolled back."""

        if int(stuck_minutes or 0) <= 0:
            return []
        cutoff = to_iso_utc(self._now() - timedelta(minutes=int(stuck_minutes)))
        recovered: list[str] = []
        for row in self.store.stalled(cutoff):
            try:
                self.store.set_status(row, state.FAILED, failureReason=STALLED_REASON)
            except TransitionError:
                # Finished or failed by its own run since the scan.
                continue
            recovered.append(row.executionId)
            log.warning("execution=%s stalled since %s; marked failed", row.executionId, row.actualExecutionTime)
        if recovered:
            self.db.commit()
        return recovered

    def _date_bound(self, value: Any, label: str) -> str:
        if value in (None, ""):
            return ""
        dt = parse_datetime_maybe(value, app_timezone=self.app_timezone)
        if not dt:
            raise ApiError("BAD_REQUEST", f"Invalid {label}")
        return to_iso_utc(dt)

    def get_statistics(self, filters: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        filters = filters or {}
        date_from = self._date_bound(filters.get("dateFrom"), "dateFrom")
        date_to = self._date_bound(filters.get("dateTo"), "dateTo")

        stats = self.store.statistics(date_from=date_from, date_to=date_to)
        stats["recentFailures"] = [serialize_execution(r) for r in stats["recentFailures"]]
        stats["stepStatistics"] = self.audit.step_statistics(date_from, date_to)
        stats["recentFailedSteps"] = [serialize_audit_entry(e) for e in self.audit.failed_steps(limit=10)]
        return stats

    def list_executions(self, filters: Optional[dict[str, Any]] = None, *, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        res = self.store.list_executions(filters or {}, page=page, page_size=page_size)
        res["items"] = [serialize_execution(r) for r in res["items"]]
        return res

    def audit_trail(self, execution_id: str) -> list[ExecutionAuditLog]:
        execution = self.store.require(execution_id)
        return self.audit.logs_for_execution(execution.executionId)

    def get_execution(self, execution_id: str) -> dict[str, Any]:
        execution = self.store.require(execution_id)
        out = serialize_execution(execution)
        out["auditLogs"] = [serialize_audit_entry(e) for e in self.audit.logs_for_execution(execution.executionId)]
        return out


def build_service(
    db,
    cfg: Config,
    *,
    notifier: Optional[NotificationGateway] = None,
    ladder: Optional[PositionLadder] = None,
    now: Callable[[], datetime] = utc_now,
) -> ExecutionService:
    """Wire the engine over one database session."""

    if notifier is None:
        from services.telegram import TelegramGateway

        notifier = TelegramGateway(cfg)

    def clock() -> str:
        return to_iso_utc(now())

    ladder = ladder or load_ladder(cfg)
    store = ExecutionStore(db, clock=clock)
    audit = AuditLogStore(db, clock=clock)
    campaigns = SqlVotingResultProvider(db)
    employees = SqlEmployeeDirectory(db, clock=clock)

    planner = ExecutionPlanner(
        store=store,
        campaigns=campaigns,
        ladder=ladder,
        tz=resolve_timezone(cfg.APP_TIMEZONE),
        start_hour=cfg.BUSINESS_START_HOUR,
        delay_hours={"promotion": cfg.PROMOTION_DELAY_HOURS, "demotion": cfg.DEMOTION_DELAY_HOURS},
        now=now,
    )
    orchestrator = Orchestrator(
        db,
        store=store,
        audit=audit,
        campaigns=campaigns,
        employees=employees,
        appeals=SqlAppealGate(db),
        notifier=notifier,
        ladder=ladder,
        clock=clock,
        management_chat_id=cfg.TELEGRAM_MANAGEMENT_CHAT_ID,
        notification_failure_aborts=cfg.NOTIFICATION_FAILURE_ABORTS,
        step_warn_seconds=cfg.STEP_WARN_SECONDS,
    )
    return ExecutionService(
        db,
        store=store,
        audit=audit,
        planner=planner,
        orchestrator=orchestrator,
        rollback_manager=RollbackManager(db, store=store, employees=employees),
        now=now,
        app_timezone=cfg.APP_TIMEZONE,
    )
