"""
Test fixtures for psql-query-exporter tests.

Provides an in-memory stand-in for the psycopg2 connection surface the exporter uses
(connect, cursor, execute, description, fetchall, closed) and config builders.
"""

import time
from pathlib import Path

import psycopg2
import pytest

from psql_query_exporter.config import resolve_config

CONFIGS_DIR = Path(__file__).parent / "configs"


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        statement = sql % params if params else sql
        self.conn.server.executed.append((statement, time.monotonic()))
        if sql.startswith("SET statement_timeout"):
            self.description = None
            return

        result = self.conn.server.results.get(sql)
        if result is None:
            raise psycopg2.ProgrammingError(f'relation for "{sql}" does not exist')
        if callable(result):
            result = result(self.conn)
        if isinstance(result, BaseException):
            raise result
        columns, rows = result
        self.description = [(name, None, None, None, None, None, None) for name in columns]
        self._rows = list(rows)

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, server, dsn):
        self.server = server
        self.dsn = dsn
        self.closed = 0
        self.autocommit = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = 1


class FakeServer:
    """
    Scripted database. results maps SQL text to (columns, rows), an exception,
    or a callable taking the connection and returning either.
    """

    def __init__(self):
        self.results = {}
        self.executed = []
        self.connections = []
        self.connect_attempts = 0
        self.fail_connects = 0

    def connect(self, **dsn):
        self.connect_attempts += 1
        if self.fail_connects:
            self.fail_connects -= 1
            raise psycopg2.OperationalError("could not connect to server: Connection refused")
        conn = FakeConnection(self, dsn)
        self.connections.append(conn)
        return conn

    def queries(self):
        """Executed statements without the statement_timeout preambles."""
        return [sql for sql, _ in self.executed if not sql.startswith("SET statement_timeout")]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def fake_clock():
    return FakeClock()


def make_config(sources, defaults=None, environ=None):
    raw = {"sources": sources}
    if defaults is not None:
        raw["defaults"] = defaults
    return resolve_config(raw, environ=environ if environ is not None else {})


def source(databases, **fields):
    data = {"host": "localhost", "user": "exporter", "password": "secret", "databases": databases}
    data.update(fields)
    return data


def database(queries, dbname="exporter", **fields):
    data = {"dbname": dbname, "queries": queries}
    data.update(fields)
    return data


def query(metric_name="test_metric", sql="select 1", values=None, **fields):
    data = {"query": sql, "metric_name": metric_name, "values": values or {"single": {}}}
    data.update(fields)
    return data


@pytest.fixture
def single_query_config():
    """Builds a one-source, one-database config around the given query definitions."""
    def _build(*queries, defaults=None, environ=None, **source_fields):
        return make_config({"pg": source([database(list(queries))], **source_fields)},
                           defaults=defaults, environ=environ)
    return _build
