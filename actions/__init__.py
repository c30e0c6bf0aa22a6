from __future__ import annotations

from typing import Any, Callable

from actions.execution import (
    execution_audit_logs,
    execution_get,
    execution_list,
    execution_pending,
    execution_plan,
    execution_rollback,
    execution_run,
    execution_statistics,
    execution_tick,
)
from utils import ApiError, AuthContext

Handler = Callable[[dict, "AuthContext | None", Any, Any], Any]

ACTION_HANDLERS: dict[str, Handler] = {
    "EXECUTION_PLAN": execution_plan,
    "EXECUTION_RUN": execution_run,
    "EXECUTION_ROLLBACK": execution_rollback,
    "EXECUTION_PENDING": execution_pending,
    "EXECUTION_STATISTICS": execution_statistics,
    "EXECUTION_LIST": execution_list,
    "EXECUTION_GET": execution_get,
    "EXECUTION_AUDIT_LOGS": execution_audit_logs,
    "EXECUTION_TICK": execution_tick,
}


def dispatch(action: str, data: Any, auth: AuthContext | None, db, cfg) -> Any:
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("ACTION_NOT_IMPLEMENTED", f"Unknown action: {action_u}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return handler(data, auth, db, cfg)
