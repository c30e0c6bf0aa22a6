from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from sqlalchemy import func, select

from engine.errors import SchedulingError
from engine.results import NotificationAttempt
from models import Employee, PositionHistory, PromotionCampaign, PromotionCandidate, PromotionVote, VoteAppeal
from utils import iso_utc_now

log = logging.getLogger(__name__)

OPEN_APPEAL_STATUSES = ("pending", "under_review")
EMPLOYEE_FIELDS = ("position", "grade", "positionStartDate")


@dataclass(frozen=True)
class VoteTally:
    agree: int
    disagree: int
    total: int
    abstain: int = 0

    @property
    def agree_percentage(self) -> float:
        return (self.agree / self.total) * 100 if self.total > 0 else 0.0


@dataclass(frozen=True)
class CampaignInfo:
    campaignId: str
    status: str
    campaignType: str
    campaignSubType: str
    tally: VoteTally

    @property
    def is_closed(self) -> bool:
        return str(self.status or "").strip().lower() == "closed"


@dataclass(frozen=True)
class CandidateInfo:
    employeeId: str
    currentPosition: str
    targetPosition: str = ""


@dataclass(frozen=True)
class EmployeeInfo:
    employeeId: str
    name: str
    position: str
    grade: Optional[int]
    positionStartDate: str
    telegramChatId: str = ""


class VotingResultProvider(Protocol):
    def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]: ...

    def get_candidates(self, campaign_id: str) -> list[CandidateInfo]: ...


class EmployeeDirectory(Protocol):
    def get_employee(self, employee_id: str) -> Optional[EmployeeInfo]: ...

    def update_employee(self, employee_id: str, fields: dict[str, Any]) -> None: ...

    def append_position_history(
        self, *, employee_id: str, execution_id: str, old_position: str, new_position: str, reason: str
    ) -> int: ...


class AppealGate(Protocol):
    def has_open_appeal(self, campaign_id: str) -> bool: ...


class NotificationGateway(Protocol):
    def notify(self, recipient: str, payload: dict[str, Any]) -> NotificationAttempt: ...


class SqlVotingResultProvider:
    def __init__(self, db):
        self.db = db

    def tally(self, campaign_id: str) -> VoteTally:
        q = (
            select(PromotionVote.currentDecision, func.count(PromotionVote.id))
            .where(PromotionVote.campaignId == campaign_id)
            .where(PromotionVote.isValid.is_(True))
            .group_by(PromotionVote.currentDecision)
        )
        counts = {str(d or "").lower(): int(c or 0) for d, c in self.db.execute(q).all()}
        return VoteTally(
            agree=counts.get("agree", 0),
            disagree=counts.get("disagree", 0),
            abstain=counts.get("abstain", 0),
            total=sum(counts.values()),
        )

    def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]:
        cid = str(campaign_id or "").strip()
        row = self.db.execute(select(PromotionCampaign).where(PromotionCampaign.campaignId == cid)).scalar_one_or_none()
        if not row:
            return None
        return CampaignInfo(
            campaignId=row.campaignId,
            status=row.status or "",
            campaignType=row.campaignType or "",
            campaignSubType=row.campaignSubType or "",
            tally=self.tally(cid),
        )

    def get_candidates(self, campaign_id: str) -> list[CandidateInfo]:
        rows = (
            self.db.execute(
                select(PromotionCandidate)
                .where(PromotionCandidate.campaignId == str(campaign_id or ""))
                .order_by(PromotionCandidate.id.asc())
            )
            .scalars()
            .all()
        )
        out: list[CandidateInfo] = []
        for r in rows:
            current = str(r.currentPosition or "").strip()
            if not current:
                emp = self.db.execute(select(Employee).where(Employee.employeeId == r.employeeId)).scalar_one_or_none()
                current = str(emp.position or "") if emp else ""
            out.append(
                CandidateInfo(
                    employeeId=r.employeeId,
                    currentPosition=current,
                    targetPosition=str(r.targetPosition or "").strip(),
                )
            )
        return out


class SqlEmployeeDirectory:
    def __init__(self, db, *, clock=iso_utc_now):
        self.db = db
        self._clock = clock

    def _row(self, employee_id: str) -> Optional[Employee]:
        return self.db.execute(
            select(Employee).where(Employee.employeeId == str(employee_id or ""))
        ).scalar_one_or_none()

    def get_employee(self, employee_id: str) -> Optional[EmployeeInfo]:
        row = self._row(employee_id)
        if not row:
            return None
        return EmployeeInfo(
            employeeId=row.employeeId,
            name=row.name or "",
            position=row.position or "",
            grade=row.grade,
            positionStartDate=row.positionStartDate or "",
            telegramChatId=row.telegramChatId or "",
        )

    def update_employee(self, employee_id: str, fields: dict[str, Any]) -> None:
        row = self._row(employee_id)
        if not row:
            raise SchedulingError(f"Employee not found: {employee_id}", code="EMPLOYEE_NOT_FOUND")
        unknown = set(fields) - set(EMPLOYEE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported employee fields: {sorted(unknown)}")
        for k, v in fields.items():
            setattr(row, k, v)
        row.updatedAt = self._clock()
        self.db.flush()

    def append_position_history(
        self, *, employee_id: str, execution_id: str, old_position: str, new_position: str, reason: str
    ) -> int:
        entry = PositionHistory(
            employeeId=str(employee_id or ""),
            executionId=str(execution_id or ""),
            oldPosition=str(old_position or ""),
            newPosition=str(new_position or ""),
            changeDate=self._clock(),
            reason=str(reason or ""),
        )
        self.db.add(entry)
        self.db.flush()
        return int(entry.id)


class SqlAppealGate:
    def __init__(self, db):
        self.db = db

    def has_open_appeal(self, campaign_id: str) -> bool:
        q = (
            select(func.count(VoteAppeal.id))
            .where(VoteAppeal.campaignId == str(campaign_id or ""))
            .where(VoteAppeal.appealStatus.in_(OPEN_APPEAL_STATUSES))
        )
        return int(self.db.execute(q).scalar() or 0) > 0


class RecordingGateway:
    """In-memory gateway for dry runs and tests; every message counts as delivered."""

    channel = "memory"

    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, recipient: str, payload: dict[str, Any]) -> NotificationAttempt:
        self.sent.append((recipient, dict(payload or {})))
        log.info("notification recorded recipient=%s kind=%s", recipient, (payload or {}).get("kind"))
        return NotificationAttempt(
            recipient=str(recipient or ""),
            kind=str((payload or {}).get("kind") or ""),
            channel=self.channel,
            delivered=True,
            at=iso_utc_now(),
        )
