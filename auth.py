from __future__ import annotations

import hmac
from typing import Any, Optional

from config import Config
from utils import ApiError, AuthContext, SYSTEM_ACTOR


PUBLIC_ACTIONS: set[str] = set()


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "EXECUTION_PLAN": ["ADMIN", "SYSTEM"],
    "EXECUTION_RUN": ["ADMIN"],
    "EXECUTION_ROLLBACK": ["ADMIN"],
    "EXECUTION_PENDING": ["ADMIN", "SYSTEM"],
    "EXECUTION_STATISTICS": ["ADMIN"],
    "EXECUTION_LIST": ["ADMIN"],
    "EXECUTION_GET": ["ADMIN"],
    "EXECUTION_AUDIT_LOGS": ["ADMIN"],
    "EXECUTION_TICK": ["ADMIN", "SYSTEM"],
}


def is_public_action(action: str) -> bool:
    return str(action or "").upper().strip() in PUBLIC_ACTIONS


def validate_internal_token(cfg: Config, token: Any, *, system: bool = False) -> AuthContext:
    """
    Callers authenticate with the shared INTERNAL_API_TOKEN. With no token
    configured (development only; production refuses to start) access is open.
    """

    expected = str(cfg.INTERNAL_API_TOKEN or "").strip()
    given = str(token or "").strip()

    if expected and not (given and hmac.compare_digest(given, expected)):
        return AuthContext(valid=False, userId="", role="")

    if system:
        return SYSTEM_ACTOR
    return AuthContext(valid=True, userId="INTERNAL", role="ADMIN")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return str(auth.role or "").upper().strip() or "PUBLIC"


def assert_permission(role: str, action: str) -> None:
    role_u = str(role or "").upper().strip()
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if not allowed:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required", http_status=401)
    if role_u not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}", http_status=403)
