import logging
import math
import time                     # For connection timing
from enum import Enum

import psycopg2                 # For connecting to PostgreSQL
import psycopg2.extensions

from . import __version__
from .errors import ConnectError, QueryError

APPLICATION_NAME = f"psql-query-exporter-v{__version__}"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


class Rows:
    """Result set of one query: column names and row tuples, with column access by name or position."""

    def __init__(self, columns, records):
        self.columns = list(columns)
        self.records = [tuple(r) for r in records]
        self._index = {}
        for i, name in enumerate(self.columns):
            self._index.setdefault(name, i)

    @classmethod
    def from_cursor(cls, cursor):
        if cursor.description is None:
            return cls([], [])
        return cls([col[0] for col in cursor.description], cursor.fetchall())

    def __len__(self):
        return len(self.records)

    def column_index(self, column):
        """Exact name match first, then case-insensitive. Raises KeyError when absent."""
        if isinstance(column, int):
            if 0 <= column < len(self.columns):
                return column
            raise KeyError(column)
        if column in self._index:
            return self._index[column]
        for i, name in enumerate(self.columns):
            if name.lower() == column.lower():
                return i
        raise KeyError(column)

    def value(self, row, column):
        return self.records[row][self.column_index(column)]


def build_dsn(database):
    dsn = {
        "host": database.host,
        "port": database.port,
        "dbname": database.dbname,
        "user": database.user,
        "password": database.password,
        "sslmode": database.sslmode,
        # libpq takes whole seconds only
        "connect_timeout": max(1, math.ceil(database.connect_timeout)),
        "application_name": APPLICATION_NAME,
    }
    for key in ("sslrootcert", "sslcert", "sslkey"):
        if getattr(database, key):
            dsn[key] = getattr(database, key)
    # Mask password for logging
    dsn_log = dict(dsn)
    dsn_log['password'] = '***'
    logging.debug(f"Building DSN for '{database.name}': {dsn_log}")
    return dsn


class Session:
    """One live connection. Queries run in autocommit mode, so a failed query leaves no aborted transaction."""

    def __init__(self, conn, name):
        self.conn = conn
        self.name = name

    @property
    def broken(self):
        return self.conn.closed != 0

    def execute(self, sql, timeout):
        try:
            with self.conn.cursor() as cursor:
                cursor.execute("SET statement_timeout = %s", (int(timeout * 1000),))
                cursor.execute(sql)
                return Rows.from_cursor(cursor)
        except psycopg2.extensions.QueryCanceledError as e:
            raise QueryError("timeout", sql, f"canceled after {timeout}s: {str(e).strip()}",
                             connection_broken=self.broken) from e
        except psycopg2.Error as e:
            # Errors without SQLSTATE come from the client side: socket gone, server restarted
            broken = self.broken or (isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError))
                                     and e.pgcode is None)
            raise QueryError("execution", sql, str(e).strip(), connection_broken=broken) from e
        except (UnicodeDecodeError, ValueError) as e:
            # Raised by psycopg2 typecasters: undecodable text, out of range dates and timestamps
            raise QueryError("execution", sql, f"unable to read result: {e}", connection_broken=self.broken) from e

    def close(self):
        try:
            self.conn.close()
        except psycopg2.Error as e:
            logging.warning(f"Error closing connection to '{self.name}': {e}")


class ConnectionManager:
    """
    Owns the connection of one database.

    connect() makes a single attempt and raises ConnectError on failure; retry timing and backoff
    belong to the caller. A session is dropped only when the driver reports the connection broken.
    """

    def __init__(self, database, connect=psycopg2.connect):
        self.database = database
        self._connect = connect
        self.session = None
        self.state = ConnectionState.DISCONNECTED

    @property
    def connected(self):
        return self.state is ConnectionState.CONNECTED and self.session is not None and not self.session.broken

    def connect(self):
        if self.connected:
            return self.session
        if self.session is not None:
            self.discard()

        self.state = ConnectionState.CONNECTING
        dsn = build_dsn(self.database)
        start_time = time.time()
        conn = None
        try:
            conn = self._connect(**dsn)
            conn.autocommit = True
        except psycopg2.Error as exc:
            if conn is not None:
                Session(conn, self.database.name).close()
            elapsed = time.time() - start_time
            self.state = ConnectionState.DISCONNECTED
            logging.warning(f"Connection to '{self.database.name}' failed after {elapsed:.2f} seconds: "
                            f"{str(exc).strip()}")
            raise ConnectError(self.database.name, str(exc).strip()) from exc

        elapsed = time.time() - start_time
        logging.info(f"Connected to '{self.database.name}' ({self.database}) in {elapsed:.2f} seconds")
        self.session = Session(conn, self.database.name)
        self.state = ConnectionState.CONNECTED
        return self.session

    def enter_backoff(self, delay):
        self.state = ConnectionState.BACKOFF
        logging.debug(f"Connection to '{self.database.name}' in backoff for {delay:g} seconds")

    def execute(self, sql, timeout):
        if not self.connected:
            raise QueryError("execution", sql, f"not connected to '{self.database.name}'", connection_broken=True)
        try:
            return self.session.execute(sql, timeout)
        except QueryError as e:
            if e.connection_broken:
                logging.warning(f"Connection to '{self.database.name}' is broken, discarding it")
                self.discard()
            raise

    def discard(self):
        if self.session is not None:
            self.session.close()
            self.session = None
        self.state = ConnectionState.DISCONNECTED

    def close(self):
        if self.session is not None:
            logging.info(f"Closing connection to '{self.database.name}'")
        self.discard()
