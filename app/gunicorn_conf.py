import os

# Gunicorn config variables
bind = os.getenv("BIND", "127.0.0.1:8000")
# Room state, locks and sockets live in process memory: one worker only.
# Scale up with a bigger box, not more workers.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120
# Let the lifespan shutdown flush dirty rooms to the store
graceful_timeout = 30
keepalive = 5
accesslog = os.getenv("ACCESS_LOG", "/var/log/coderoom/access.log")
errorlog = os.getenv("ERROR_LOG", "/var/log/coderoom/error.log")
loglevel = "info"
daemon = False
