from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional


class StepResult:
    """Base for the typed payload each pipeline step returns."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, obj: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in (obj or {}).items() if k in known})


@dataclass(frozen=True)
class EmployeeSnapshot:
    employeeId: str
    position: str
    grade: Optional[int]
    positionStartDate: str
    capturedAt: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "EmployeeSnapshot":
        return cls(
            employeeId=str(obj.get("employeeId") or ""),
            position=str(obj.get("position") or ""),
            grade=obj.get("grade"),
            positionStartDate=str(obj.get("positionStartDate") or ""),
            capturedAt=str(obj.get("capturedAt") or ""),
        )

    def employee_fields(self) -> dict[str, Any]:
        return {"position": self.position, "grade": self.grade, "positionStartDate": self.positionStartDate}


@dataclass(frozen=True)
class NotificationAttempt:
    recipient: str
    kind: str
    channel: str
    delivered: bool
    at: str
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "NotificationAttempt":
        return cls(
            recipient=str(obj.get("recipient") or ""),
            kind=str(obj.get("kind") or ""),
            channel=str(obj.get("channel") or ""),
            delivered=bool(obj.get("delivered")),
            at=str(obj.get("at") or ""),
            error=str(obj.get("error") or ""),
        )


@dataclass(frozen=True)
class ResultValidation(StepResult):
    validated: bool
    campaignStatus: str
    checkedAt: str


@dataclass(frozen=True)
class BackupResult(StepResult):
    backedUp: bool
    snapshot: dict[str, Any]


@dataclass(frozen=True)
class PositionUpdate(StepResult):
    updated: bool
    oldPosition: str
    newPosition: str
    updatedAt: str


@dataclass(frozen=True)
class SalaryAdjustment(StepResult):
    employeeId: str
    oldGrade: Optional[int]
    newGrade: Optional[int]
    changeType: str
    adjustmentDate: str


@dataclass(frozen=True)
class PermissionChange(StepResult):
    employeeId: str
    oldPosition: str
    newPosition: str
    permissions: list[str]
    updatedAt: str


@dataclass(frozen=True)
class NotificationReport(StepResult):
    notificationsSent: int
    attempts: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class SystemRecordUpdate(StepResult):
    system: str
    action: str
    historyId: int
    changeDate: str
    reason: str


RESULT_TYPES: dict[str, type[StepResult]] = {
    "validate_result": ResultValidation,
    "backup_current_state": BackupResult,
    "update_position": PositionUpdate,
    "adjust_salary": SalaryAdjustment,
    "update_permissions": PermissionChange,
    "send_notifications": NotificationReport,
    "update_system_records": SystemRecordUpdate,
}


def encode_step_results(results: dict[str, StepResult]) -> str:
    return json.dumps({k: v.to_dict() for k, v in results.items()}, ensure_ascii=False)


def decode_step_results(raw: str) -> dict[str, StepResult]:
    try:
        obj = json.loads(str(raw or "").strip() or "{}")
    except Exception:
        return {}
    if not isinstance(obj, dict):
        return {}

    out: dict[str, StepResult] = {}
    for step, payload in obj.items():
        cls = RESULT_TYPES.get(step)
        if cls is None or not isinstance(payload, dict):
            continue
        out[step] = cls.from_dict(payload)
    return out


def decode_snapshot(raw: str) -> Optional[EmployeeSnapshot]:
    s = str(raw or "").strip()
    if not s:
        return None
    try:
        obj = json.loads(s)
    except Exception:
        return None
    return EmployeeSnapshot.from_dict(obj) if isinstance(obj, dict) else None


def decode_notifications(raw: str) -> list[NotificationAttempt]:
    try:
        obj = json.loads(str(raw or "").strip() or "[]")
    except Exception:
        return []
    if not isinstance(obj, list):
        return []
    return [NotificationAttempt.from_dict(x) for x in obj if isinstance(x, dict)]
