from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class Employee(Base):
    __tablename__ = "employees"

    employeeId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    position = Column(String, nullable=False, default="", index=True)
    grade = Column(Integer, nullable=True)
    positionStartDate = Column(Text, nullable=False, default="")
    store = Column(Text, nullable=False, default="")
    telegramChatId = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class PromotionCampaign(Base):
    __tablename__ = "promotion_campaigns"

    campaignId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    campaignType = Column(String, nullable=False, default="", index=True)
    campaignSubType = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="active", index=True)
    endDate = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class PromotionCandidate(Base):
    __tablename__ = "promotion_candidates"
    __table_args__ = (UniqueConstraint("campaignId", "employeeId", name="uq_promotion_candidates_campaign_employee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaignId = Column(String, nullable=False, index=True)
    employeeId = Column(String, nullable=False, index=True)
    currentPosition = Column(String, nullable=False, default="")
    # Empty means "next/previous rung on the ladder".
    targetPosition = Column(String, nullable=False, default="")


class PromotionVote(Base):
    __tablename__ = "promotion_votes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaignId = Column(String, nullable=False, index=True)
    voterId = Column(String, nullable=False, default="")
    currentDecision = Column(String, nullable=False, default="")
    isValid = Column(Boolean, nullable=False, default=True)
    votedAt = Column(Text, nullable=False, default="")


class VoteAppeal(Base):
    __tablename__ = "vote_appeals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaignId = Column(String, nullable=False, index=True)
    appellantId = Column(String, nullable=False, default="")
    appealStatus = Column(String, nullable=False, default="pending", index=True)
    reason = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class PositionChangeExecution(Base):
    __tablename__ = "position_change_executions"
    __table_args__ = (UniqueConstraint("campaignId", "employeeId", name="uq_executions_campaign_employee"),)

    executionId = Column(String, primary_key=True)
    campaignId = Column(String, nullable=False, index=True)
    employeeId = Column(String, nullable=False, index=True)
    changeType = Column(String, nullable=False, index=True)
    oldPosition = Column(String, nullable=False, default="")
    newPosition = Column(String, nullable=False, default="")
    oldGrade = Column(Integer, nullable=True)
    newGrade = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    scheduledTime = Column(Text, nullable=False, default="", index=True)
    actualExecutionTime = Column(Text, nullable=False, default="")
    stepResultsJson = Column(Text, nullable=False, default="{}")
    rollbackSnapshotJson = Column(Text, nullable=False, default="")
    approvedBy = Column(String, nullable=False, default="")
    executedBy = Column(String, nullable=False, default="SYSTEM")
    failureReason = Column(Text, nullable=False, default="")
    notificationsSentJson = Column(Text, nullable=False, default="[]")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")

    def can_execute(self) -> bool:
        return self.status == "pending"

    def can_rollback(self) -> bool:
        return self.status in {"completed", "failed"} and bool(str(self.rollbackSnapshotJson or "").strip())


class ExecutionAuditLog(Base):
    __tablename__ = "execution_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    executionId = Column(String, nullable=False, index=True)
    step = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="started", index=True)
    startTime = Column(Text, nullable=False, default="", index=True)
    endTime = Column(Text, nullable=False, default="")
    durationMs = Column(Integer, nullable=True)
    resultJson = Column(Text, nullable=False, default="")
    errorMessage = Column(Text, nullable=False, default="")

    @property
    def is_finalized(self) -> bool:
        return self.status != "started"


class PositionHistory(Base):
    __tablename__ = "position_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employeeId = Column(String, nullable=False, index=True)
    executionId = Column(String, nullable=False, default="", index=True)
    oldPosition = Column(String, nullable=False, default="")
    newPosition = Column(String, nullable=False, default="")
    changeDate = Column(Text, nullable=False, default="", index=True)
    reason = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    at = Column(Text, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")
