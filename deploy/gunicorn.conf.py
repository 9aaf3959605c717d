# ==============================================================================
# Gunicorn Configuration for the career site API
# ==============================================================================
# Run with: gunicorn -c deploy/gunicorn.conf.py career_site.wsgi:application

import multiprocessing
import os

# Server socket
port = os.environ.get("PORT", "8000")
bind = f"0.0.0.0:{port}"
backlog = 1024

# Workers: short JSON requests plus outbound calls to Grow/Morning
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "sync"
timeout = 60  # Grow and Morning calls time out at 30s each
keepalive = 5
max_requests = 1000
max_requests_jitter = 50

proc_name = "career_site"

# Logging to stdout/stderr
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(u)s %(t)s "%(r)s" %(s)s %(b)s %(L)s'

# Webhook bodies are small form posts
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190

daemon = False
pidfile = None

raw_env = [
    "DJANGO_SETTINGS_MODULE=career_site.settings",
]
