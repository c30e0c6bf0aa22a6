from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from engine.collaborators import AppealGate, EmployeeDirectory, EmployeeInfo, NotificationGateway, VotingResultProvider
from engine.errors import SchedulingError, StepExecutionError, ValidationError
from engine.hierarchy import PositionLadder
from engine.results import (
    BackupResult,
    EmployeeSnapshot,
    NotificationAttempt,
    NotificationReport,
    PermissionChange,
    PositionUpdate,
    ResultValidation,
    SalaryAdjustment,
    StepResult,
    SystemRecordUpdate,
)
from engine.store import ExecutionStore
from models import PositionChangeExecution

log = logging.getLogger(__name__)

MANAGEMENT_RECIPIENT = "management"


@dataclass
class StepContext:
    execution: PositionChangeExecution
    store: ExecutionStore
    campaigns: VotingResultProvider
    employees: EmployeeDirectory
    appeals: AppealGate
    notifier: NotificationGateway
    ladder: PositionLadder
    clock: Callable[[], str]
    management_chat_id: str = ""
    notification_failure_aborts: bool = True


def _require_employee(ctx: StepContext) -> EmployeeInfo:
    emp = ctx.employees.get_employee(ctx.execution.employeeId)
    if not emp:
        raise SchedulingError(f"Employee not found: {ctx.execution.employeeId}", code="EMPLOYEE_NOT_FOUND")
    return emp


def validate_result(ctx: StepContext) -> ResultValidation:
    campaign = ctx.campaigns.get_campaign(ctx.execution.campaignId)
    if not campaign:
        raise SchedulingError(f"Campaign not found: {ctx.execution.campaignId}", code="CAMPAIGN_NOT_FOUND")
    if not campaign.is_closed:
        raise ValidationError("Voting campaign is not formally closed")
    if ctx.appeals.has_open_appeal(ctx.execution.campaignId):
        raise ValidationError("An appeal is pending or under review; execution paused")
    return ResultValidation(validated=True, campaignStatus=campaign.status, checkedAt=ctx.clock())


def backup_current_state(ctx: StepContext) -> BackupResult:
    emp = _require_employee(ctx)
    snapshot = EmployeeSnapshot(
        employeeId=emp.employeeId,
        position=emp.position,
        grade=emp.grade,
        positionStartDate=emp.positionStartDate,
        capturedAt=ctx.clock(),
    )
    ctx.store.record_snapshot(ctx.execution, snapshot)
    return BackupResult(backedUp=True, snapshot=snapshot.to_dict())


def update_position(ctx: StepContext) -> PositionUpdate:
    emp = _require_employee(ctx)
    now = ctx.clock()
    ctx.employees.update_employee(
        emp.employeeId,
        {"position": ctx.execution.newPosition, "positionStartDate": now},
    )
    return PositionUpdate(updated=True, oldPosition=emp.position, newPosition=ctx.execution.newPosition, updatedAt=now)


def adjust_salary(ctx: StepContext) -> SalaryAdjustment:
    # Recorded only; nothing is sent to payroll.
    ex = ctx.execution
    if ex.newGrade is None:
        raise StepExecutionError("adjust_salary", f"No salary grade resolved for position {ex.newPosition!r}")
    log.info("salary grade change employee=%s grade %s -> %s", ex.employeeId, ex.oldGrade, ex.newGrade)
    return SalaryAdjustment(
        employeeId=ex.employeeId,
        oldGrade=ex.oldGrade,
        newGrade=ex.newGrade,
        changeType=ex.changeType,
        adjustmentDate=ctx.clock(),
    )


def update_permissions(ctx: StepContext) -> PermissionChange:
    ex = ctx.execution
    return PermissionChange(
        employeeId=ex.employeeId,
        oldPosition=ex.oldPosition,
        newPosition=ex.newPosition,
        permissions=ctx.ladder.permissions_for(ex.newPosition),
        updatedAt=ctx.clock(),
    )


def _messages(ctx: StepContext, emp: EmployeeInfo) -> list[tuple[str, dict]]:
    ex = ctx.execution
    return [
        (
            ex.employeeId,
            {
                "kind": "position_change",
                "chatId": emp.telegramChatId,
                "text": f"Your position has changed: {ex.oldPosition} -> {ex.newPosition}",
            },
        ),
        (
            MANAGEMENT_RECIPIENT,
            {
                "kind": "position_change_report",
                "chatId": ctx.management_chat_id,
                "text": (
                    f"Position change {ex.executionId}: employee {emp.name or ex.employeeId} "
                    f"{ex.oldPosition} -> {ex.newPosition} ({ex.changeType})"
                ),
            },
        ),
    ]


def send_notifications(ctx: StepContext) -> NotificationReport:
    emp = _require_employee(ctx)
    attempts: list[NotificationAttempt] = []
    for recipient, payload in _messages(ctx, emp):
        try:
            attempts.append(ctx.notifier.notify(recipient, payload))
        except Exception as e:
            if ctx.notification_failure_aborts:
                raise StepExecutionError(
                    "send_notifications",
                    f"Notification to {recipient} failed: {getattr(e, 'message', None) or e}",
                    attempts=attempts,
                ) from e
            log.warning("notification failed recipient=%s: %s", recipient, e)
            attempts.append(
                NotificationAttempt(
                    recipient=recipient,
                    kind=str(payload.get("kind") or ""),
                    channel=str(getattr(ctx.notifier, "channel", "") or ""),
                    delivered=False,
                    at=ctx.clock(),
                    error=str(e),
                )
            )

    ctx.store.append_notifications(ctx.execution, attempts)
    return NotificationReport(
        notificationsSent=sum(1 for a in attempts if a.delivered),
        attempts=[a.to_dict() for a in attempts],
    )


def update_system_records(ctx: StepContext) -> SystemRecordUpdate:
    ex = ctx.execution
    reason = f"Automatic execution of voting result - campaign {ex.campaignId}"
    history_id = ctx.employees.append_position_history(
        employee_id=ex.employeeId,
        execution_id=ex.executionId,
        old_position=ex.oldPosition,
        new_position=ex.newPosition,
        reason=reason,
    )
    return SystemRecordUpdate(
        system="position_history",
        action="add_record",
        historyId=history_id,
        changeDate=ctx.clock(),
        reason=reason,
    )


Step = Callable[[StepContext], StepResult]

PIPELINE: tuple[tuple[str, Step], ...] = (
    ("validate_result", validate_result),
    ("backup_current_state", backup_current_state),
    ("update_position", update_position),
    ("adjust_salary", adjust_salary),
    ("update_permissions", update_permissions),
    ("send_notifications", send_notifications),
    ("update_system_records", update_system_records),
)

STEP_NAMES = tuple(name for name, _ in PIPELINE)

# Steps that write to the employee record; the snapshot must exist before they run.
MUTATING_STEPS = frozenset({"update_position"})
