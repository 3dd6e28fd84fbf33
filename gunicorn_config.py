import os
import multiprocessing

# Gunicorn Production Configuration
# Promotion evaluation is CPU-bound and stateless: one worker per core plus one,
# overridable through WEB_CONCURRENCY.
bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get('WEB_CONCURRENCY', multiprocessing.cpu_count() + 1))
threads = 2
worker_class = 'gthread'

# Resilience
timeout = 60
max_requests = 1000
max_requests_jitter = 100
keepalive = 5

# Logging
accesslog = '-'       # Stdout
errorlog = '-'        # Stderr
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
capture_output = True
