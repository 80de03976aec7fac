"""PostgreSQL query exporter: runs SQL queries on a schedule and serves the results as Prometheus metrics."""

__version__ = "0.3.0"
