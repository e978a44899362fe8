# Gunicorn configuration file
# Usage: gunicorn -c gunicorn.conf.py entitlement_sync.wsgi:app

import multiprocessing
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '10000')}"
backlog = 2048

# Worker processes
# Each request blocks on the full reconciliation run; keep the timeout above
# RECONCILE_TIMEOUT_SECONDS so the app answers before gunicorn kills the worker.
workers = multiprocessing.cpu_count() * 2 + 1
worker_class = "sync"
timeout = 60
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"
access_log_format = '%(h)s - - [%(t)s] - "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s"'

# Process naming
proc_name = "entitlement-sync"

# Server mechanics
daemon = False
pidfile = None
umask = 0
