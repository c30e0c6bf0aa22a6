import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


class Config:
    def __init__(self) -> None:
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "5002"))

        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hrms.db")

        # Business calendar used for scheduling position changes.
        self.APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Asia/Taipei")
        self.BUSINESS_START_HOUR = _env_int("BUSINESS_START_HOUR", 9)
        self.PROMOTION_DELAY_HOURS = _env_int("PROMOTION_DELAY_HOURS", 24)
        self.DEMOTION_DELAY_HOURS = _env_int("DEMOTION_DELAY_HOURS", 2)

        # In-process poller (single worker). Run one gunicorn worker with it enabled,
        # or leave it off and call POST /api/jobs/execute-due from cron.
        self.ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "0") == "1"
        self.SCHEDULER_TICK_SECONDS = _env_int("SCHEDULER_TICK_SECONDS", 3600)
        # 0 disables the stuck in_progress recovery scan.
        self.STUCK_EXECUTION_MINUTES = _env_int("STUCK_EXECUTION_MINUTES", 0)
        self.STEP_WARN_SECONDS = _env_float("STEP_WARN_SECONDS", 30.0)
        self.NOTIFICATION_FAILURE_ABORTS = os.getenv("NOTIFICATION_FAILURE_ABORTS", "1") != "0"

        # Telegram notification gateway. Without a bot token notifications are only logged.
        self.TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
        self.TELEGRAM_MANAGEMENT_CHAT_ID = os.getenv("TELEGRAM_MANAGEMENT_CHAT_ID", "").strip()
        self.TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").strip().rstrip("/")
        self.NOTIFY_TIMEOUT_SECONDS = _env_float("NOTIFY_TIMEOUT_SECONDS", 10.0)

        # Position ladder override: inline JSON wins over a file path.
        self.POSITION_LADDER_JSON = os.getenv("POSITION_LADDER_JSON", "").strip()
        self.POSITION_LADDER_FILE = os.getenv("POSITION_LADDER_FILE", "").strip()

        self.INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN", "").strip()

        self.ALLOWED_ORIGINS = [
            s.strip() for s in (os.getenv("ALLOWED_ORIGINS", "*") or "*").split(",") if s.strip()
        ]

        self.RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "300 per minute")
        self.RATE_LIMIT_GLOBAL = os.getenv("RATE_LIMIT_GLOBAL", "2000 per minute")

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def IS_PRODUCTION(self) -> bool:
        return str(self.APP_ENV or "").strip().lower() in {"prod", "production"}

    def validate(self) -> None:
        if self.IS_PRODUCTION and str(self.DATABASE_URL or "").startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production")

        if self.IS_PRODUCTION and not self.INTERNAL_API_TOKEN:
            raise RuntimeError("INTERNAL_API_TOKEN must be set in production")

        if self.IS_PRODUCTION and any(str(o or "").strip() == "*" for o in (self.ALLOWED_ORIGINS or [])):
            raise RuntimeError("ALLOWED_ORIGINS must not contain '*' in production")

        if self.SCHEDULER_TICK_SECONDS <= 0:
            raise RuntimeError("SCHEDULER_TICK_SECONDS must be positive")

        if not 0 <= self.BUSINESS_START_HOUR <= 23:
            raise RuntimeError("BUSINESS_START_HOUR must be between 0 and 23")
