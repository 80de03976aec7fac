import logging
import threading                # For guarding the shared record map
import time
from collections import namedtuple

from prometheus_client.core import Metric


class MetricIdentity(namedtuple("MetricIdentity", "name labels")):
    """Fully qualified metric name plus its complete label set, as sorted (label, value) pairs."""
    __slots__ = ()

    @classmethod
    def create(cls, name, labels=None):
        return cls(name, tuple(sorted((labels or {}).items())))

    def label_dict(self):
        return dict(self.labels)

    def __str__(self):
        labels = ",".join(f'{k}="{v}"' for k, v in self.labels)
        return f"{self.name}{{{labels}}}"


MetricRecord = namedtuple("MetricRecord", "value last_success expiration description owner")


def is_expired(record, now):
    # Expiration 0 means the record never expires
    return record.expiration > 0 and now - record.last_success > record.expiration


class MetricRegistry:
    """
    Live metric observations shared by all database schedulers.

    Writers replace whole records under a short lock, so each key is updated atomically.
    Readers copy the record list under the same lock and filter it outside,
    so a snapshot never holds writers up for longer than a dict copy.
    Expired records are hidden from snapshots but kept, so a later success brings them back.
    """

    def __init__(self):
        self._records = {}
        self._lock = threading.Lock()
        self._collisions = set()

    def upsert(self, identity, value, now, expiration=0, description=None, owner=None):
        record = MetricRecord(value, now, expiration, description or identity.name, owner)
        with self._lock:
            previous = self._records.get(identity)
            self._records[identity] = record
        if previous is not None and owner is not None and previous.owner not in (None, owner):
            self._report_collision(identity, previous.owner, owner)

    def _report_collision(self, identity, first, second):
        key = (identity, frozenset((first, second)))
        if key in self._collisions:
            return
        self._collisions.add(key)
        logging.warning(f"Metric {identity} is written by both {first} and {second}; "
                        f"the most recent successful query wins")

    def records(self, now):
        """Returns (identity, record) pairs that are not expired at now, sorted by identity."""
        with self._lock:
            items = list(self._records.items())
        return sorted((item for item in items if not is_expired(item[1], now)), key=lambda item: item[0])

    def snapshot(self, now):
        return [(identity, record.value) for identity, record in self.records(now)]

    def __len__(self):
        with self._lock:
            return len(self._records)


class RegistryCollector:
    """prometheus_client collector that renders the live part of a MetricRegistry as gauges."""

    def __init__(self, registry, clock=time.time):
        self.registry = registry
        self.clock = clock

    def collect(self):
        families = {}
        for identity, record in self.registry.records(self.clock()):
            family = families.get(identity.name)
            if family is None:
                family = Metric(identity.name, record.description, "gauge")
                families[identity.name] = family
            # Label names may differ between series of one name (multi_labels overlays)
            family.add_sample(identity.name, identity.label_dict(), float(record.value))
        return list(families.values())

    def describe(self):
        # Metric names are only known after queries ran; nothing to pre-register
        return []
