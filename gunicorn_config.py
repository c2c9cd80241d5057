# gunicorn_config.py
# gunicorn -c gunicorn_config.py app:app
import os

bind = os.environ.get("BIND", "0.0.0.0:10000")
# One worker: the undo slot and the per-table locks live in process memory
workers = 1
worker_class = "gevent"
timeout = 30
keepalive = 5
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
