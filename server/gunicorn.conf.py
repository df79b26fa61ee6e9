"""Gunicorn configuration for production deployment.

Reads the same environment variables as core/config.py.

Preload jobs, the usage tracker and the maintenance scheduler live in the
worker process, so run a single worker unless the KV store is shared and
maintenance is disabled on all but one deployment.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "3010")
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"

bind = f"{host}:{port}"

workers = max(1, int(os.getenv("WORKERS", "1")))
worker_class = "uvicorn.workers.UvicornWorker"

# Long preloads run in background tasks; requests stay short
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

proc_name = "attendance-cache"

# Scheduler and job state must start inside the worker, not the master
preload_app = False
