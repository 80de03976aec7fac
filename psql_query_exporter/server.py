import gzip
import logging
import os
import time

from flask import Flask, request, Response  # For HTTP metrics endpoint
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from .config import load_config
from .errors import ConfigError
from .registry import MetricRegistry, RegistryCollector
from .scheduler import CollectorsTask

CONFIG_ENV = "PSQL_EXPORTER_CONFIG"

HOME_PAGE = """<html>
<head><title>PostgreSQL Query Exporter</title></head>
<body>
<h1>PostgreSQL Query Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>
"""

# Collectors started by create_app in this process, stopped by graceful_shutdown
_collectors = None


def make_text_response(body, status=200, content_type=CONTENT_TYPE_LATEST):
    """Create a text response, gzip-compressed when the client supports it via Accept-Encoding."""
    body_bytes = body.encode('utf-8') if isinstance(body, str) else body

    accept_enc = request.headers.get('Accept-Encoding', '') or ''
    logging.debug(f"Client Accept-Encoding header: '{accept_enc}'")
    if 'gzip' in accept_enc.lower():
        compressed = gzip.compress(body_bytes)
        logging.debug(f"Compressed response: {len(body_bytes)} -> {len(compressed)} bytes")
        resp = Response(compressed, status=status)
        resp.headers['Content-Encoding'] = 'gzip'
        resp.headers['Content-Type'] = content_type
        resp.headers['Content-Length'] = str(len(compressed))
        return resp

    resp = Response(body_bytes, status=status)
    resp.headers['Content-Type'] = content_type
    resp.headers['Content-Length'] = str(len(body_bytes))
    return resp


def create_app(config=None, registry=None, start_collectors=True, **collector_options):
    """
    Builds the Flask app serving the registry and, unless start_collectors is False,
    starts one collector per configured database.

    Without an explicit config the file named by $PSQL_EXPORTER_CONFIG is loaded.
    """
    global _collectors

    if config is None:
        config_path = os.environ.get(CONFIG_ENV)
        if not config_path:
            raise ConfigError("file", CONFIG_ENV, "config file path is not set")
        config = load_config(config_path)
    registry = registry if registry is not None else MetricRegistry()

    exposition = CollectorRegistry(auto_describe=False)
    exposition.register(RegistryCollector(registry))

    app = Flask(__name__)
    app.config['METRIC_REGISTRY'] = registry

    @app.route('/')
    def home():
        return Response(HOME_PAGE, mimetype='text/html')

    @app.route('/health')
    def health():
        return Response("healthy\n", mimetype='text/plain')

    @app.route('/metrics')
    def metrics():
        start = time.time()
        output = generate_latest(exposition)
        if not output:
            logging.warning("No metrics found")
            output = b"# no metrics found\n"
        logging.debug(f"Metrics rendered in {time.time() - start:.3f} seconds ({len(output)} bytes)")
        return make_text_response(output)

    if start_collectors:
        if _collectors is not None:
            _collectors.stop()
        _collectors = CollectorsTask(config, registry, **collector_options)
        _collectors.start()
        app.config['COLLECTORS'] = _collectors

    return app


def graceful_shutdown(timeout=30):
    """Stops the collectors started by create_app, waiting up to timeout seconds."""
    global _collectors
    if _collectors is None:
        return True
    logging.info("Shutting down collectors...")
    stopped = _collectors.stop(timeout)
    _collectors = None
    return stopped
