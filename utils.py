from __future__ import annotations

import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from cachetools import TTLCache
from dateutil import parser as dt_parser
from zoneinfo import ZoneInfo

ALLOWED_ERROR_CODES = {
    "BAD_REQUEST",
    "AUTH_INVALID",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "INTERNAL",
}

_CODE_MAP = {
    "BAD_JSON": "BAD_REQUEST",
    "CONFIG_MISSING": "INTERNAL",
    "UNKNOWN_ERROR": "INTERNAL",
    "ACTION_NOT_IMPLEMENTED": "BAD_REQUEST",
    "AUTH_REQUIRED": "AUTH_INVALID",
    "VALIDATION_FAILED": "BAD_REQUEST",
    "STEP_FAILED": "INTERNAL",
    "EXECUTION_NOT_FOUND": "NOT_FOUND",
    "CAMPAIGN_NOT_FOUND": "NOT_FOUND",
    "EMPLOYEE_NOT_FOUND": "NOT_FOUND",
    "ROLLBACK_NOT_ALLOWED": "CONFLICT",
    "TRANSITION_NOT_ALLOWED": "CONFLICT",
}


def map_error_code(code: str) -> str:
    c = str(code or "").upper().strip()
    if c in ALLOWED_ERROR_CODES:
        return c
    return _CODE_MAP.get(c, "INTERNAL")


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int = 200):
        super().__init__(message)
        self.code = map_error_code(code)
        self.message = str(message or "")
        self.http_status = http_status


def ok(data: Any, http_status: int = 200):
    return {"ok": True, "data": data}, http_status


def err(code: str, message: str, http_status: int = 200):
    return {"ok": False, "error": {"code": map_error_code(code), "message": str(message or "")}}, http_status


def to_iso_utc(dt: datetime) -> str:
    x = dt.astimezone(timezone.utc)
    # Match JS Date.toJSON() millisecond precision.
    x = x.replace(microsecond=(x.microsecond // 1000) * 1000)
    return x.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc_now() -> str:
    return to_iso_utc(utc_now())


def parse_datetime_maybe(value: Any, *, app_timezone: str = "Asia/Taipei") -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        try:
            dt = dt_parser.parse(s)
        except Exception:
            return None

    if dt.tzinfo is None:
        try:
            dt = dt.replace(tzinfo=ZoneInfo(app_timezone))
        except Exception:
            dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_log_id() -> str:
    return f"LOG-{new_uuid()}"


def parse_json_body(raw_text: str) -> dict:
    try:
        obj = json.loads(raw_text or "{}")
    except Exception:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(obj, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return obj


def safe_json_string(value: Any, fallback: str = "") -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return fallback


def parse_json_maybe(raw: Any, fallback: Any = None) -> Any:
    s = str(raw or "").strip()
    if not s:
        return fallback
    try:
        return json.loads(s)
    except Exception:
        return fallback


def redact_for_audit(obj: Any) -> Any:
    if not obj or not isinstance(obj, (dict, list)):
        return obj
    try:
        copy = json.loads(json.dumps(obj))
    except Exception:
        return obj

    secret_keys = {"token", "sessionToken", "apiToken", "botToken", "password"}

    def _walk(x: Any) -> Any:
        if isinstance(x, dict):
            for k in list(x.keys()):
                if k in secret_keys:
                    x[k] = "[REDACTED]"
                else:
                    x[k] = _walk(x[k])
            return x
        if isinstance(x, list):
            return [_walk(v) for v in x]
        return x

    return _walk(copy)


@dataclass(frozen=True)
class AuthContext:
    valid: bool
    userId: str
    role: str


SYSTEM_ACTOR = AuthContext(valid=True, userId="SYSTEM", role="SYSTEM")


class SimpleRateLimiter:
    def __init__(self):
        self._counts = TTLCache(maxsize=50_000, ttl=60)

    @staticmethod
    def _parse_limit_per_minute(limit: str) -> int:
        m = re.match(r"^\s*(\d+)\s+per\s+minute\s*$", str(limit or ""), re.IGNORECASE)
        if not m:
            return 300
        return int(m.group(1))

    def check(self, key: str, limit: str) -> None:
        max_per_minute = self._parse_limit_per_minute(limit)
        current = int(self._counts.get(key, 0)) + 1
        self._counts[key] = current
        if current > max_per_minute:
            raise ApiError("CONFLICT", "Rate limit exceeded", http_status=429)


def now_monotonic() -> float:
    return time.monotonic()
