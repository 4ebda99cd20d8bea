# backend/gunicorn_conf.py

# Gunicorn config for the leadflow API: gunicorn -c gunicorn_conf.py leadflow.main:app

import os

# Basic configuration
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Queue workers run inside every API process; the scheduler is a separate process (scheduler.py)
graceful_timeout = 30

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"
proxy_allow_ips = '*'

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
