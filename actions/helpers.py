from __future__ import annotations

from typing import Any, Optional

from models import AuditLog
from utils import ApiError, AuthContext, iso_utc_now, new_log_id, safe_json_string


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str,
    actor: AuthContext | None,
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    meta: Any = None,
    at: Optional[str] = None,
) -> None:
    if meta is None:
        meta_json = "{}"
    elif isinstance(meta, str):
        meta_json = meta
    else:
        meta_json = safe_json_string(meta, "{}")

    db.add(
        AuditLog(
            logId=new_log_id(),
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId if actor else "PUBLIC"),
            actorRole=str(actor.role if actor else "PUBLIC"),
            at=str(at or iso_utc_now()),
            metaJson=meta_json,
        )
    )


def require_text(data: dict, key: str, label: str = "") -> str:
    value = str((data or {}).get(key) or "").strip()
    if not value:
        raise ApiError("BAD_REQUEST", f"Missing {label or key}")
    return value


def page_args(data: dict) -> tuple[int, int]:
    try:
        page = int((data or {}).get("page") or 1)
        page_size = int((data or {}).get("pageSize") or 20)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid page or pageSize")
    return max(1, page), max(1, min(200, page_size))
