import logging
import threading                # For the shared stop signal
import time
import traceback                # For detailed error logging
from concurrent.futures import ThreadPoolExecutor, wait

from .db import ConnectionManager
from .errors import ConnectError, QueryError
from .mapper import descriptions, map_rows


class Backoff:
    """
    Delay before the next connection attempt.
    Starts at interval, grows by interval on every consecutive failure and is capped at max_interval.
    """

    def __init__(self, interval, max_interval):
        self.interval = interval
        self.max_interval = max_interval
        self.next_delay = interval

    def failure(self):
        delay = self.next_delay
        self.next_delay = min(self.next_delay + self.interval, self.max_interval)
        return delay

    def reset(self):
        self.next_delay = self.interval


class DatabaseScheduler:
    """
    Drives the queries of one database through time over a single connection.

    Due queries run one at a time in list order, so a slow query delays the ones after it.
    While the connection is in backoff every query of the database waits.
    """

    def __init__(self, database, registry, stop_event=None, connection_factory=ConnectionManager,
                 clock=time.monotonic, wall_clock=time.time):
        self.database = database
        self.registry = registry
        self.stop_event = stop_event or threading.Event()
        self.connection = connection_factory(database)
        self.backoff = Backoff(database.backoff_interval, database.max_backoff_interval)
        self.clock = clock
        self.wall_clock = wall_clock
        self.next_due = [clock()] * len(database.queries)
        self.retry_at = None
        self._descriptions = [descriptions(q) for q in database.queries]

    @property
    def name(self):
        return self.database.name

    def tick(self):
        """
        Runs every query that is due, in list order, and returns the monotonic time of the next tick.
        """
        now = self.clock()
        if self.retry_at is not None:
            if now < self.retry_at:
                return self.retry_at
            self.retry_at = None

        for index, query in enumerate(self.database.queries):
            if self.next_due[index] > now:
                continue
            if not self.connection.connected and not self._connect():
                return self.retry_at
            self._run(index, query)
        return min(self.next_due)

    def _connect(self):
        try:
            self.connection.connect()
        except ConnectError as e:
            delay = self.backoff.failure()
            self.connection.enter_backoff(delay)
            self.retry_at = self.clock() + delay
            logging.error(f"[{self.name}] {e}; next attempt in {delay:g} seconds")
            return False
        self.backoff.reset()
        return True

    def _run(self, index, query):
        started = self.clock()
        try:
            rows = self.connection.execute(query.query, query.query_timeout)
            observations = map_rows(query, rows)
        except QueryError as e:
            # Prior values stay in the registry and age out through metric_expiration_time
            logging.error(f"[{self.name}] Metric '{query.metric_name}': {e}")
        except Exception as e:
            # Session state is unknown after an unexpected error, start over with a fresh connection
            logging.error(f"[{self.name}] Metric '{query.metric_name}' failed unexpectedly: {e}\n"
                          f"Traceback:\n{traceback.format_exc()}")
            self.connection.discard()
        else:
            now = self.wall_clock()
            for identity, value in observations:
                self.registry.upsert(identity, value, now,
                                     expiration=query.metric_expiration_time,
                                     description=self._descriptions[index].get(identity.name),
                                     owner=query.path)
            logging.debug(f"[{self.name}] Metric '{query.metric_name}': {len(observations)} value(s) updated "
                          f"in {self.clock() - started:.3f} seconds")
        finally:
            self._advance(index, query, started)

    def _advance(self, index, query, started):
        # Missed runs are skipped, never queued
        now = self.clock()
        next_due = self.next_due[index] + query.scrape_interval
        if next_due <= now:
            next_due += ((now - next_due) // query.scrape_interval + 1) * query.scrape_interval
        if now - started > query.scrape_interval:
            logging.warning(f"[{self.name}] Metric '{query.metric_name}' took {now - started:.2f} seconds, "
                            f"longer than its scrape interval of {query.scrape_interval:g} seconds")
        self.next_due[index] = next_due

    def run(self):
        if not self.database.queries:
            logging.warning(f"[{self.name}] No queries configured, nothing to do")
            return
        logging.info(f"[{self.name}] Starting collector with {len(self.database.queries)} queries")
        try:
            while not self.stop_event.is_set():
                wake_at = self.tick()
                self.stop_event.wait(max(0.0, wake_at - self.clock()))
        finally:
            self.connection.close()
            logging.info(f"[{self.name}] Collector stopped")


class CollectorsTask:
    """Runs one DatabaseScheduler per configured database, each on its own worker thread."""

    def __init__(self, config, registry, connection_factory=ConnectionManager):
        self.stop_event = threading.Event()
        self.schedulers = [DatabaseScheduler(database, registry, self.stop_event, connection_factory)
                           for database in config.databases]
        self.executor = None
        self.futures = []

    def start(self):
        if not self.schedulers:
            logging.warning("No databases configured, no collectors started")
            return
        self.executor = ThreadPoolExecutor(max_workers=len(self.schedulers), thread_name_prefix="collector")
        self.futures = [self.executor.submit(self._run, scheduler) for scheduler in self.schedulers]
        logging.info(f"Started {len(self.futures)} collector(s)")

    def _run(self, scheduler):
        try:
            scheduler.run()
        except Exception as e:
            logging.error(f"[{scheduler.name}] Collector stopped unexpectedly: {e}\n"
                          f"Traceback:\n{traceback.format_exc()}")

    def running(self):
        return any(not f.done() for f in self.futures)

    def stop(self, timeout=None):
        """
        Asks every collector to stop at its next tick boundary and waits for them.
        In-flight queries are allowed to finish or time out. Returns True if all collectors stopped.
        """
        self.stop_event.set()
        if self.executor is None:
            return True
        _, not_done = wait(self.futures, timeout=timeout)
        self.executor.shutdown(wait=False)
        if not_done:
            logging.warning(f"{len(not_done)} collector(s) still running after {timeout} seconds")
            return False
        logging.info("All collectors have been stopped")
        return True
