from __future__ import annotations

import json
import logging
import os
from typing import Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS

from actions import dispatch
from auth import assert_permission, role_or_public, validate_internal_token
from config import Config
from db import SessionLocal, create_schema, init_engine
from engine.scheduler import ExecutionScheduler
from engine.service import build_service
from models import AuditLog
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


rest_api = Blueprint("rest_api", __name__)


def _rest_token() -> str:
    internal = str(request.headers.get("X-Internal-Token") or "").strip()
    if internal:
        return internal
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return ""


def _audit_row(auth_ctx, action_u: str, stage_tag: str, data: Any, remark: str = "", error: Any = None) -> AuditLog:
    meta: dict[str, Any] = {"data": redact_for_audit(data or {})}
    if error is not None:
        meta["error"] = error
    return AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType="API",
        entityId=str(auth_ctx.userId or "") if auth_ctx else "PUBLIC",
        action=action_u or "UNKNOWN",
        fromState="",
        toState="",
        stageTag=stage_tag,
        remark=remark,
        actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
        actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
        at=iso_utc_now(),
        metaJson=json.dumps(meta, ensure_ascii=False),
    )


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError):
    db2 = SessionLocal()
    try:
        db2.add(
            _audit_row(
                auth_ctx,
                str(action or "").upper(),
                "API_ERROR",
                data,
                remark=f"{err_obj.code}: {err_obj.message}",
                error={"code": err_obj.code, "message": err_obj.message},
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        logging.getLogger("api").exception("could not write error audit action=%s", action)
    finally:
        db2.close()


def _handle(action: str, data: dict, token: Any, *, stage_tag: str, system: bool = False):
    cfg: Config = current_app.config["CFG"]
    limiter: SimpleRateLimiter = current_app.extensions["rate_limiter"]
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")

        ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

        auth_ctx = validate_internal_token(cfg, token, system=system)
        if not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or missing internal token", http_status=401)
        assert_permission(role_or_public(auth_ctx), action_u)

        db = SessionLocal()
        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)

        db.add(_audit_row(auth_ctx, action_u, stage_tag, data))
        db.commit()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        logging.getLogger("api").info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            auth_ctx.userId,
            auth_ctx.role,
            latency_ms,
        )
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    except Exception:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", "Unexpected error")
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("request_id=%s action=%s", g.request_id, action_u)
        return err(api_err.code, api_err.message)[0]
    finally:
        if db is not None:
            db.close()


def _rest_handle(action: str, data: dict, *, system: bool = False):
    return _handle(action, data, _rest_token(), stage_tag="API_CALL_REST", system=system)


@rest_api.post("/api/execution/trigger/<campaign_id>")
def rest_execution_trigger(campaign_id: str):
    return _rest_handle("EXECUTION_PLAN", {"campaignId": campaign_id})


@rest_api.post("/api/execution/execute/<execution_id>")
def rest_execution_execute(execution_id: str):
    body = request.get_json(silent=True) or {}
    return _rest_handle("EXECUTION_RUN", {"executionId": execution_id, "adminId": body.get("adminId")})


@rest_api.post("/api/execution/rollback/<execution_id>")
def rest_execution_rollback(execution_id: str):
    body = request.get_json(silent=True) or {}
    return _rest_handle("EXECUTION_ROLLBACK", {"executionId": execution_id, "reason": body.get("reason")})


@rest_api.get("/api/execution/pending")
def rest_execution_pending():
    return _rest_handle("EXECUTION_PENDING", {})


@rest_api.get("/api/execution/statistics")
def rest_execution_statistics():
    return _rest_handle(
        "EXECUTION_STATISTICS",
        {"dateFrom": request.args.get("dateFrom"), "dateTo": request.args.get("dateTo")},
    )


@rest_api.get("/api/execution/records")
def rest_execution_records():
    data = {
        k: request.args.get(k)
        for k in ("status", "employeeId", "changeType", "campaignId", "page", "pageSize")
        if request.args.get(k) is not None
    }
    return _rest_handle("EXECUTION_LIST", data)


@rest_api.get("/api/execution/records/<execution_id>")
def rest_execution_record(execution_id: str):
    return _rest_handle("EXECUTION_GET", {"executionId": execution_id})


@rest_api.get("/api/execution/audit-logs/<execution_id>")
def rest_execution_audit_logs(execution_id: str):
    return _rest_handle("EXECUTION_AUDIT_LOGS", {"executionId": execution_id})


@rest_api.post("/api/jobs/execute-due")
def rest_jobs_execute_due():
    return _rest_handle("EXECUTION_TICK", {}, system=True)


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _build_scheduler(app: Flask, cfg: Config) -> ExecutionScheduler:
    def _service_factory(db):
        factory = app.extensions.get("execution_service_factory")
        if factory is not None:
            return factory(db)
        return build_service(db, cfg)

    return ExecutionScheduler(
        SessionLocal,
        _service_factory,
        tick_seconds=cfg.SCHEDULER_TICK_SECONDS,
        stuck_minutes=cfg.STUCK_EXECUTION_MINUTES,
    )


def create_app(*, service_factory=None) -> Flask:
    """
    `service_factory(db)` replaces the default engine wiring (Telegram gateway,
    configured ladder); tests pass one with an in-memory gateway.
    """

    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    create_schema(engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    app.extensions["rate_limiter"] = SimpleRateLimiter()
    if service_factory is not None:
        app.extensions["execution_service_factory"] = service_factory

    scheduler = _build_scheduler(app, cfg)
    app.extensions["execution_scheduler"] = scheduler

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        return ok(
            {
                "status": "ok",
                "env": cfg.APP_ENV,
                "scheduler": "running" if scheduler.running else "stopped",
                "time": iso_utc_now(),
            }
        )[0]

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.post("/api")
    def api_route():
        raw = request.get_data(as_text=True)
        try:
            body = parse_json_body(raw)
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)[0], e.http_status

        data = body.get("data") or {}
        return _handle(str(body.get("action") or ""), data, body.get("token"), stage_tag="API_CALL")

    if cfg.ENABLE_SCHEDULER:
        scheduler.start()

    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
