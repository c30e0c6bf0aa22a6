import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


bind = f"0.0.0.0:{_env_int('PORT', 5002)}"
wsgi_app = "server:create_app()"

# The in-process execution scheduler must run in exactly one process. With
# ENABLE_SCHEDULER=1 keep a single worker; otherwise scale workers freely and
# drive POST /api/jobs/execute-due from cron.
_scheduler_enabled = os.getenv("ENABLE_SCHEDULER", "0") == "1"
workers = 1 if _scheduler_enabled else max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 4))

timeout = max(10, _env_int("GUNICORN_TIMEOUT", 120))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = max(1, _env_int("GUNICORN_KEEPALIVE", 5))

# Log to stdout/stderr (container friendly).
accesslog = "-"
errorlog = "-"

# Worker recycling would restart the scheduler thread mid-run; leave it off when it is enabled.
max_requests = 0 if _scheduler_enabled else max(0, _env_int("GUNICORN_MAX_REQUESTS", 0))
max_requests_jitter = max(0, _env_int("GUNICORN_MAX_REQUESTS_JITTER", 0))
