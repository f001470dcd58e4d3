"""Gunicorn configuration for the CLAT doubt service.

Usage:
    gunicorn main:app -c deploy/gunicorn.conf.py

WebSocket rooms are held per process.  Run more than one worker only with
``REALTIME_BACKEND=redis`` so every worker relays the same events.
"""

import multiprocessing
import os

# ─── Server socket ──────────────────────────────────────────────

bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# ─── Worker processes ───────────────────────────────────────────

if os.getenv("REALTIME_BACKEND", "local") == "redis":
    workers = int(os.getenv("WORKERS", min(multiprocessing.cpu_count(), 4)))
else:
    workers = 1
worker_class = "uvicorn.workers.UvicornWorker"

# ─── Timeouts ───────────────────────────────────────────────────
#
# AI answers are bounded at AI_TIMEOUT (30s by default) inside the request.

timeout = 90
graceful_timeout = 30   # Side effects drain on shutdown
keepalive = 75          # WebSocket clients reconnect after idle drops

# ─── Worker recycling ──────────────────────────────────────────

max_requests = 5000
max_requests_jitter = 500

# ─── Logging ────────────────────────────────────────────────────

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
access_log_format = (
    '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" %(D)sμs'
)

# ─── Process naming ─────────────────────────────────────────────

proc_name = "clat-doubt-service"

# ─── Server hooks ───────────────────────────────────────────────


def on_starting(server):
    """Called just before the master process is initialized."""
    server.log.info(
        "Starting CLAT doubt service: workers=%d, timeout=%ds, bind=%s",
        workers,
        timeout,
        bind,
    )


def worker_exit(server, worker):
    """Called when a worker has been killed or exited."""
    server.log.info("Worker exit (pid: %s)", worker.pid)
