import os

# Run with: gunicorn -c gunicorn.conf.py


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


wsgi_app = "server:create_app()"
bind = f"0.0.0.0:{_env_int('PORT', 5002)}"

# Compliance checks fan out to threads and wait on the database, so gthread.
worker_class = "gthread"

# Each worker holds its own engine pool and role cache; keep workers * threads under the DB connection limit.
workers = max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 4))

# A request that hits REQUEST_TIMEOUT_SECONDS answers TIMEOUT; the worker must outlive it to send that answer.
_request_timeout = _env_float("REQUEST_TIMEOUT_SECONDS", 15.0)
timeout = max(int(_request_timeout) + 15, _env_int("GUNICORN_TIMEOUT", 60))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info").strip().lower()
