from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import AuditLog, Employee, PositionChangeExecution, PromotionCampaign, PromotionCandidate, PromotionVote


def _seed_campaign(campaign_id: str = "42", employee_id: str = "7", agree: int = 40, disagree: int = 20) -> None:
    db = SessionLocal()
    try:
        db.add(
            Employee(
                employeeId=employee_id,
                name="Lin",
                position="員工",
                grade=2,
                positionStartDate="2024-03-01T01:00:00.000Z",
                telegramChatId="555",
                createdAt="2024-03-01T01:00:00.000Z",
                updatedAt="2024-03-01T01:00:00.000Z",
            )
        )
        db.add(PromotionCampaign(campaignId=campaign_id, name="Spring", campaignType="promotion", status="closed"))
        db.add(PromotionCandidate(campaignId=campaign_id, employeeId=employee_id, currentPosition="員工"))
        for i in range(agree + disagree):
            db.add(PromotionVote(campaignId=campaign_id, voterId=f"V{i}", currentDecision="agree" if i < agree else "disagree"))
        db.commit()
    finally:
        db.close()


def test_health_ok(app_client):
    _app, client = app_client
    res = client.get("/health")
    assert res.status_code == 200
    data = res.get_json()
    assert data["ok"] is True
    assert data["data"]["status"] == "ok"
    assert data["data"]["scheduler"] == "stopped"
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Request-ID"]


def test_trigger_execute_and_rollback(app_client):
    app, client = app_client
    _seed_campaign()

    res = client.post("/api/execution/trigger/42")
    body = res.get_json()
    assert body["ok"] is True, body
    assert body["data"]["executed"] is True
    assert body["data"]["created"] is True
    execution_id = body["data"]["executions"][0]["executionId"]
    assert body["data"]["executions"][0]["newPosition"] == "副店長"

    pending = client.get("/api/execution/pending").get_json()
    assert [x["executionId"] for x in pending["data"]["items"]] == [execution_id]

    res = client.post(f"/api/execution/execute/{execution_id}", json={"adminId": "U-9"})
    body = res.get_json()
    assert body["ok"] is True, body
    assert body["data"]["status"] == "completed"
    assert body["data"]["executedBy"] == "ADMIN_U-9"
    assert len(app.extensions["test_gateway"].sent) == 2

    logs = client.get(f"/api/execution/audit-logs/{execution_id}").get_json()
    assert logs["data"]["total"] == 7

    res = client.post(f"/api/execution/rollback/{execution_id}", json={"reason": "Appeal upheld"})
    body = res.get_json()
    assert body["data"]["status"] == "rolled_back"
    assert body["data"]["failureReason"] == "Appeal upheld"

    db = SessionLocal()
    try:
        emp = db.execute(select(Employee).where(Employee.employeeId == "7")).scalar_one()
        assert emp.position == "員工"
        tags = {r.stageTag for r in db.execute(select(AuditLog)).scalars().all()}
        assert {"API_CALL_REST", "EXECUTION_PLANNED", "EXECUTION_MANUAL", "EXECUTION_ROLLED_BACK"} <= tags
    finally:
        db.close()


def test_rollback_of_pending_is_a_conflict(app_client):
    _app, client = app_client
    _seed_campaign()
    execution_id = client.post("/api/execution/trigger/42").get_json()["data"]["executions"][0]["executionId"]

    res = client.post(f"/api/execution/rollback/{execution_id}", json={})
    assert res.status_code == 409
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "CONFLICT"

    db = SessionLocal()
    try:
        row = db.execute(
            select(PositionChangeExecution).where(PositionChangeExecution.executionId == execution_id)
        ).scalar_one()
        assert row.status == "pending"
        errors = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_ERROR")).scalars().all()
        assert [e.action for e in errors] == ["EXECUTION_ROLLBACK"]
    finally:
        db.close()


def test_below_threshold_trigger_is_a_noop(app_client):
    _app, client = app_client
    _seed_campaign(campaign_id="43", agree=10, disagree=40)

    body = client.post("/api/execution/trigger/43").get_json()
    assert body["ok"] is True
    assert body["data"]["executed"] is False
    assert body["data"]["executions"] == []
    assert "20.00%" in body["data"]["reason"]


def test_unknown_execution_is_not_found(app_client):
    _app, client = app_client
    res = client.get("/api/execution/records/EXE-404404")
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"


def test_records_statistics_and_detail(app_client):
    _app, client = app_client
    _seed_campaign()
    execution_id = client.post("/api/execution/trigger/42").get_json()["data"]["executions"][0]["executionId"]
    client.post(f"/api/execution/execute/{execution_id}", json={})

    listing = client.get("/api/execution/records?status=completed&pageSize=5").get_json()["data"]
    assert listing["total"] == 1
    assert listing["pageSize"] == 5
    assert listing["items"][0]["executionId"] == execution_id

    assert client.get("/api/execution/records?status=failed").get_json()["data"]["total"] == 0

    detail = client.get(f"/api/execution/records/{execution_id}").get_json()["data"]
    assert [e["step"] for e in detail["auditLogs"]][0] == "validate_result"
    assert detail["rollbackSnapshot"]["position"] == "員工"

    stats = client.get("/api/execution/statistics").get_json()["data"]
    assert stats["summary"]["totalExecutions"] == 1
    assert stats["summary"]["completedExecutions"] == 1
    assert stats["summary"]["successRate"] == 100.0
    assert {"changeType": "promotion", "status": "completed", "count": 1} in stats["changeTypeStats"]
    assert any(s["step"] == "update_position" for s in stats["stepStatistics"])
    assert stats["recentFailedSteps"] == []

    bad = client.get("/api/execution/statistics?dateFrom=not-a-date")
    assert bad.get_json()["error"]["code"] == "BAD_REQUEST"


def test_action_dispatcher(app_client):
    _app, client = app_client
    _seed_campaign()

    res = client.post("/api", json={"action": "execution_plan", "data": {"campaignId": "42"}})
    body = res.get_json()
    assert body["ok"] is True, body
    assert len(body["data"]["executions"]) == 1

    res = client.post("/api", json={"action": "NOPE", "data": {}})
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    res = client.post("/api", json={"action": "EXECUTION_PLAN", "data": {}})
    assert res.get_json()["error"]["message"] == "Missing campaignId"


def test_execute_due_job_runs_scheduler_tick(app_client):
    _app, client = app_client

    body = client.post("/api/jobs/execute-due").get_json()
    assert body["ok"] is True
    assert body["data"]["skipped"] is False
    assert body["data"]["processed"] == []


def test_internal_token_is_enforced(cfg, monkeypatch):
    from server import create_app

    monkeypatch.setenv("INTERNAL_API_TOKEN", "s3cret")
    app = create_app()
    app.testing = True

    with app.test_client() as client:
        res = client.get("/api/execution/pending")
        assert res.status_code == 401
        assert res.get_json()["error"]["code"] == "AUTH_INVALID"

        res = client.get("/api/execution/pending", headers={"X-Internal-Token": "s3cret"})
        assert res.get_json()["ok"] is True

        res = client.get("/api/execution/pending", headers={"Authorization": "Bearer s3cret"})
        assert res.get_json()["ok"] is True

        res = client.post("/api", json={"action": "EXECUTION_PENDING", "token": "wrong"})
        assert res.status_code == 401

    from db import engine

    engine.dispose()
