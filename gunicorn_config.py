# Run with:
#   PSQL_EXPORTER_CONFIG=config.yaml gunicorn -c gunicorn_config.py "psql_query_exporter.server:create_app()"

bind = "0.0.0.0:9090"
workers = 1  # !!!KEEP THIS AS 1: every worker would run its own collectors and registry
threads = 4  # Scrapes only read the registry, they never wait on the database
worker_class = "gthread"

loglevel = "info"
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr

# Timeout settings for client disconnects and stuck requests
timeout = 45      # Worker timeout - kills workers stuck on requests
keepalive = 2     # Keep-alive for HTTP connections
graceful_timeout = 30  # Collectors get this long to finish in-flight queries
worker_connections = 1000  # Maximum concurrent requests per worker

# No max_requests: a worker restart would drop every collected metric
preload_app = False  # Collectors must start inside the worker, threads do not survive fork

# Enable proper signal handling for Docker
enable_stdio_inheritance = True

disable_redirect_access_to_syslog = True


### For TLS support, uncomment and set certfile and keyfile paths below.
### As well as change bind to use :9443.
# certfile = "/certs/server.crt"
# keyfile = "/certs/server.key"

def worker_abort(worker):
    """Called when a worker times out (client disconnect or stuck request)."""
    import logging
    logging.warning(f"Worker {worker.pid} timed out - likely client disconnect")

def worker_exit(server, worker):
    """Called when a worker is exiting: stop collectors so connections are closed cleanly."""
    import logging
    from psql_query_exporter.server import graceful_shutdown
    logging.info(f"Worker {worker.pid} exiting - stopping collectors")
    graceful_shutdown(timeout=graceful_timeout)

def on_exit(server):
    """Called when the master process is exiting."""
    import logging
    logging.info("Gunicorn master process exiting")
