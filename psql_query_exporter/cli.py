import argparse
import ipaddress
import logging
import sys

from gunicorn.app.base import BaseApplication

from . import __version__
from .config import load_config
from .errors import ConfigError
from .logging_setup import setup_logging
from .server import create_app, graceful_shutdown

INVALID_IP_ADDRESS_ERROR = "IP address isn't valid"


def parse_ip_address(value):
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        raise argparse.ArgumentTypeError(INVALID_IP_ADDRESS_ERROR) from None


def parse_port(value):
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port '{value}'") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be in range 1..65535, got {port}")
    return port


def build_parser():
    parser = argparse.ArgumentParser(
        prog="psql-query-exporter",
        description="Runs SQL queries against PostgreSQL on a schedule and serves the results as Prometheus metrics.",
    )
    parser.add_argument("-c", "--config", required=True, help="Path to the scrape config file")
    parser.add_argument("-l", "--listen-on", type=parse_ip_address, default="0.0.0.0",
                        help="IP address to listen on (default: %(default)s)")
    parser.add_argument("-p", "--port", type=parse_port, default=9090,
                        help="Port to serve HTTP on (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable additional logging (info)")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable extreme logging (debug)")
    parser.add_argument("-j", "--json-log", action="store_true", help="Write logs as JSON objects, one per line")
    parser.add_argument("--log-timezone", default="system",
                        help="Timezone for log timestamps, 'system' or a tz database name (default: %(default)s)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def worker_exit(server, worker):
    """Called when the gunicorn worker is exiting: stop collectors before the process goes away."""
    logging.info(f"Worker {worker.pid} exiting - stopping collectors")
    graceful_shutdown()


class ExporterApplication(BaseApplication):
    """
    Embedded gunicorn server. The app is built inside the worker process,
    since collector threads do not survive a fork.
    """

    def __init__(self, app_factory, options=None):
        self.app_factory = app_factory
        self.options = options or {}
        super().__init__()

    def load_config(self):
        for key, value in self.options.items():
            if key in self.cfg.settings and value is not None:
                self.cfg.set(key.lower(), value)

    def load(self):
        return self.app_factory()


def gunicorn_options(args):
    return {
        "bind": f"{args.listen_on}:{args.port}",
        "workers": 1,  # !!!KEEP THIS AS 1: the metric registry lives in the worker process
        "threads": 4,
        "worker_class": "gthread",
        "timeout": 45,
        "graceful_timeout": 30,
        "keepalive": 2,
        "preload_app": False,
        "loglevel": "debug" if args.debug else "info" if args.verbose else "warning",
        "errorlog": "-",
        "worker_exit": worker_exit,
    }


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, verbose=args.verbose, tz_name=args.log_timezone, json_log=args.json_log)

    # Fail fast in the master process: a broken config never reaches the workers
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.error(f"Invalid config: {e}")
        print(f"psql-query-exporter: invalid config: {e}", file=sys.stderr)
        return 1

    logging.info(f"Starting psql-query-exporter {__version__} on {args.listen_on}:{args.port}")
    ExporterApplication(lambda: create_app(config), gunicorn_options(args)).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
