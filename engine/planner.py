from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Optional

from engine.collaborators import CampaignInfo, VotingResultProvider
from engine.errors import SchedulingError, ValidationError
from engine.hierarchy import PositionLadder
from engine.schedule import compute_scheduled_time
from engine.store import ExecutionStore
from models import PositionChangeExecution
from utils import to_iso_utc, utc_now

log = logging.getLogger(__name__)

PROMOTION_THRESHOLD = 50.0
DEMOTION_THRESHOLD = 30.0


@dataclass(frozen=True)
class ExecutionDecision:
    execute: bool
    reason: str
    changeType: str = ""
    agreePercentage: float = 0.0


@dataclass
class PlanOutcome:
    executed: bool
    reason: str
    executions: list[PositionChangeExecution] = field(default_factory=list)
    created: bool = False


def is_promotion_campaign(campaign: CampaignInfo) -> bool:
    return campaign.campaignType == "promotion" or campaign.campaignSubType == "new_employee_promotion"


def is_demotion_campaign(campaign: CampaignInfo) -> bool:
    return campaign.campaignSubType == "demotion_punishment"


def decide(campaign: CampaignInfo) -> ExecutionDecision:
    pct = campaign.tally.agree_percentage

    if is_promotion_campaign(campaign):
        if pct >= PROMOTION_THRESHOLD:
            return ExecutionDecision(True, "Promotion vote passed", "promotion", pct)
        return ExecutionDecision(False, f"Agree ratio too low: {pct:.2f}% (requires 50%)", "promotion", pct)

    if is_demotion_campaign(campaign):
        if pct >= DEMOTION_THRESHOLD:
            return ExecutionDecision(True, "Demotion vote passed", "demotion", pct)
        return ExecutionDecision(False, f"Agree ratio too low: {pct:.2f}% (requires 30%)", "demotion", pct)

    return ExecutionDecision(False, "Unknown campaign type", "", pct)


class ExecutionPlanner:
    def __init__(
        self,
        *,
        store: ExecutionStore,
        campaigns: VotingResultProvider,
        ladder: PositionLadder,
        tz: tzinfo,
        start_hour: int = 9,
        delay_hours: Optional[dict[str, int]] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.campaigns = campaigns
        self.ladder = ladder
        self.tz = tz
        self.start_hour = start_hour
        self.delay_hours = delay_hours
        self._now = now

    def plan_from_campaign(self, campaign_id: str) -> PlanOutcome:
        cid = str(campaign_id or "").strip()

        existing = self.store.find_by_campaign(cid)
        if existing:
            log.info("campaign=%s already planned (%s executions); skipping", cid, len(existing))
            return PlanOutcome(True, "Execution plan already exists", existing, created=False)

        campaign = self.campaigns.get_campaign(cid)
        if not campaign:
            raise SchedulingError(f"Campaign not found: {cid}", code="CAMPAIGN_NOT_FOUND")
        if not campaign.is_closed:
            raise ValidationError(f"Campaign {cid} is not closed")

        decision = decide(campaign)
        if not decision.execute:
            log.info("campaign=%s not executed: %s", cid, decision.reason)
            return PlanOutcome(False, decision.reason)

        now = self._now()
        scheduled = to_iso_utc(
            compute_scheduled_time(
                decision.changeType,
                now,
                tz=self.tz,
                start_hour=self.start_hour,
                delay_hours=self.delay_hours,
            )
        )

        rows: list[PositionChangeExecution] = []
        for cand in self.campaigns.get_candidates(cid):
            if cand.targetPosition:
                new_position = cand.targetPosition
            elif decision.changeType == "promotion":
                new_position = self.ladder.successor(cand.currentPosition)
            else:
                new_position = self.ladder.predecessor(cand.currentPosition)
            if not new_position:
                raise SchedulingError(
                    f"No current position for employee {cand.employeeId} in campaign {cid}",
                    code="POSITION_NOT_FOUND",
                )

            row = self.store.create(
                campaign_id=cid,
                employee_id=cand.employeeId,
                change_type=decision.changeType,
                old_position=cand.currentPosition,
                new_position=new_position,
                old_grade=self.ladder.grade_of(cand.currentPosition),
                new_grade=self.ladder.grade_of(new_position),
                scheduled_time=scheduled,
            )
            rows.append(row)
            log.info(
                "planned execution=%s employee=%s %s -> %s at %s",
                row.executionId,
                cand.employeeId,
                cand.currentPosition,
                new_position,
                scheduled,
            )

        return PlanOutcome(True, decision.reason, rows, created=bool(rows))
