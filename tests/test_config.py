from __future__ import annotations

import pytest

from config import Config


def test_defaults(cfg):
    assert cfg.APP_TIMEZONE == "Asia/Taipei"
    assert cfg.BUSINESS_START_HOUR == 9
    assert cfg.PROMOTION_DELAY_HOURS == 24
    assert cfg.DEMOTION_DELAY_HOURS == 2
    assert cfg.ENABLE_SCHEDULER is False
    assert cfg.SCHEDULER_TICK_SECONDS == 3600
    assert cfg.STUCK_EXECUTION_MINUTES == 0
    assert cfg.NOTIFICATION_FAILURE_ABORTS is True
    cfg.validate()


def test_bad_numbers_fall_back(cfg, monkeypatch):
    monkeypatch.setenv("SCHEDULER_TICK_SECONDS", "soon")
    monkeypatch.setenv("STEP_WARN_SECONDS", "")
    c = Config()
    assert c.SCHEDULER_TICK_SECONDS == 3600
    assert c.STEP_WARN_SECONDS == 30.0


@pytest.mark.parametrize(
    "env",
    [
        {"APP_ENV": "production", "INTERNAL_API_TOKEN": "t", "ALLOWED_ORIGINS": "https://hr.example.com"},
        {"APP_ENV": "production", "DATABASE_URL": "postgresql://u:p@db/hr", "ALLOWED_ORIGINS": "https://hr.example.com"},
        {"APP_ENV": "production", "DATABASE_URL": "postgresql://u:p@db/hr", "INTERNAL_API_TOKEN": "t"},
        {"SCHEDULER_TICK_SECONDS": "0"},
        {"BUSINESS_START_HOUR": "24"},
    ],
)
def test_validate_rejects_unsafe_settings(cfg, monkeypatch, env):
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    with pytest.raises(RuntimeError):
        Config().validate()


def test_production_settings_pass(cfg, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/hr")
    monkeypatch.setenv("INTERNAL_API_TOKEN", "t")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://hr.example.com")
    Config().validate()
