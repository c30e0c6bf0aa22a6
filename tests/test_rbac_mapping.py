from types import SimpleNamespace

import pytest

from actions import ACTION_HANDLERS
import auth
from utils import ApiError


def test_all_action_handlers_have_rbac_mapping() -> None:
    missing: list[str] = []
    for k in ACTION_HANDLERS.keys():
        ku = str(k or "").upper().strip()
        if not ku:
            continue
        if ku in auth.PUBLIC_ACTIONS:
            continue
        if ku not in auth.STATIC_RBAC_PERMISSIONS:
            missing.append(ku)

    assert missing == []


def test_system_actor_cannot_run_or_roll_back() -> None:
    auth.assert_permission("SYSTEM", "EXECUTION_TICK")
    auth.assert_permission("ADMIN", "EXECUTION_ROLLBACK")
    for action in ("EXECUTION_RUN", "EXECUTION_ROLLBACK"):
        with pytest.raises(ApiError) as e:
            auth.assert_permission("SYSTEM", action)
        assert e.value.code == "FORBIDDEN"


def test_internal_token_check() -> None:
    cfg = SimpleNamespace(INTERNAL_API_TOKEN="s3cret")
    assert auth.validate_internal_token(cfg, "s3cret").valid is True
    assert auth.validate_internal_token(cfg, "nope").valid is False
    assert auth.validate_internal_token(cfg, "").valid is False
    assert auth.validate_internal_token(cfg, "s3cret", system=True).role == "SYSTEM"

    open_cfg = SimpleNamespace(INTERNAL_API_TOKEN="")
    assert auth.role_or_public(auth.validate_internal_token(open_cfg, None)) == "ADMIN"
