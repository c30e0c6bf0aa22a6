import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


# Friday 2025-01-10 15:00 in Asia/Taipei.
FRIDAY_AFTERNOON = datetime(2025, 1, 10, 7, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class Seeder:
    def __init__(self, db):
        self.db = db

    def employee(self, employee_id: str, position: str, *, grade=None, name: str = "", chat_id: str = "", start="2024-03-01T01:00:00.000Z"):
        from models import Employee

        self.db.add(
            Employee(
                employeeId=employee_id,
                name=name or f"Employee {employee_id}",
                position=position,
                grade=grade,
                positionStartDate=start,
                store="Taipei Main",
                telegramChatId=chat_id,
                status="ACTIVE",
                createdAt="2024-03-01T01:00:00.000Z",
                updatedAt="2024-03-01T01:00:00.000Z",
            )
        )
        self.db.commit()

    def campaign(
        self,
        campaign_id: str,
        *,
        campaign_type: str = "promotion",
        sub_type: str = "",
        status: str = "closed",
        agree: int = 0,
        disagree: int = 0,
        abstain: int = 0,
        invalid: int = 0,
    ):
        from models import PromotionCampaign, PromotionVote

        self.db.add(
            PromotionCampaign(
                campaignId=campaign_id,
                name=f"Campaign {campaign_id}",
                campaignType=campaign_type,
                campaignSubType=sub_type,
                status=status,
                endDate="2025-01-09T16:00:00.000Z",
                createdAt="2025-01-01T01:00:00.000Z",
            )
        )
        n = 0
        for decision, count, valid in (
            ("agree", agree, True),
            ("disagree", disagree, True),
            ("abstain", abstain, True),
            ("agree", invalid, False),
        ):
            for _ in range(count):
                n += 1
                self.db.add(
                    PromotionVote(
                        campaignId=campaign_id,
                        voterId=f"V{n}",
                        currentDecision=decision,
                        isValid=valid,
                        votedAt="2025-01-05T01:00:00.000Z",
                    )
                )
        self.db.commit()

    def candidate(self, campaign_id: str, employee_id: str, current: str = "", target: str = ""):
        from models import PromotionCandidate

        self.db.add(
            PromotionCandidate(
                campaignId=campaign_id,
                employeeId=employee_id,
                currentPosition=current,
                targetPosition=target,
            )
        )
        self.db.commit()

    def appeal(self, campaign_id: str, status: str = "pending"):
        from models import VoteAppeal

        self.db.add(
            VoteAppeal(
                campaignId=campaign_id,
                appellantId="7",
                appealStatus=status,
                reason="Vote was unfair",
                createdAt="2025-01-09T01:00:00.000Z",
            )
        )
        self.db.commit()


@pytest.fixture()
def cfg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "test.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("APP_TIMEZONE", "Asia/Taipei")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    # Prevent accidental pollution from any existing env config.
    for name in (
        "ENABLE_SCHEDULER",
        "INTERNAL_API_TOKEN",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_MANAGEMENT_CHAT_ID",
        "NOTIFICATION_FAILURE_ABORTS",
        "STUCK_EXECUTION_MINUTES",
        "POSITION_LADDER_JSON",
        "POSITION_LADDER_FILE",
        "ALLOWED_ORIGINS",
        "BUSINESS_START_HOUR",
        "PROMOTION_DELAY_HOURS",
        "DEMOTION_DELAY_HOURS",
    ):
        monkeypatch.delenv(name, raising=False)

    from config import Config

    return Config()


@pytest.fixture()
def db_session(cfg):
    from db import SessionLocal, create_schema, init_engine

    engine = init_engine(cfg.DATABASE_URL)
    create_schema(engine)

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture()
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture()
def clock():
    return FixedClock(FRIDAY_AFTERNOON)


@pytest.fixture()
def gateway():
    from engine.collaborators import RecordingGateway

    return RecordingGateway()


@pytest.fixture()
def service(db_session, cfg, gateway, clock):
    from engine.service import build_service

    return build_service(db_session, cfg, notifier=gateway, now=clock)


@pytest.fixture()
def app_client(cfg, monkeypatch: pytest.MonkeyPatch):
    from engine.collaborators import RecordingGateway
    from engine.service import build_service
    from server import create_app

    gw = RecordingGateway()
    app = create_app(service_factory=lambda db: build_service(db, app.config["CFG"], notifier=gw))
    app.testing = True
    app.extensions["test_gateway"] = gw

    with app.test_client() as client:
        yield app, client

    from db import engine

    if engine is not None:
        engine.dispose()
