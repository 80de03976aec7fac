"""
Tests for the metric registry: expiration, snapshots, collisions and rendering.
"""

import logging
import threading

from prometheus_client import CollectorRegistry, generate_latest

from psql_query_exporter.registry import MetricIdentity, MetricRegistry, RegistryCollector


def _identity(name="m", **labels):
    return MetricIdentity.create(name, labels)


class TestMetricIdentity:

    def test_labels_are_order_independent(self):
        assert MetricIdentity.create("m", {"b": "2", "a": "1"}) == MetricIdentity.create("m", {"a": "1", "b": "2"})

    def test_str(self):
        assert str(_identity("m", state="idle", db="x")) == 'm{db="x",state="idle"}'

    def test_hashable(self):
        assert len({_identity(a="1"), _identity(a="1"), _identity(a="2")}) == 2


class TestExpiration:

    def test_expired_record_is_hidden_and_comes_back(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0, expiration=5)

        assert registry.snapshot(4) == [(_identity(), 1)]
        assert registry.snapshot(6) == []

        registry.upsert(_identity(), 2, now=7, expiration=5)
        assert registry.snapshot(8) == [(_identity(), 2)]

    def test_boundary_is_still_visible(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0, expiration=5)

        assert registry.snapshot(5) == [(_identity(), 1)]

    def test_zero_never_expires(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0, expiration=0)

        assert registry.snapshot(10 ** 9) == [(_identity(), 1)]

    def test_expired_records_are_kept(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0, expiration=5)

        registry.snapshot(100)
        assert len(registry) == 1

    def test_each_record_expires_on_its_own(self):
        registry = MetricRegistry()
        registry.upsert(_identity(q="a"), 1, now=0, expiration=5)
        registry.upsert(_identity(q="b"), 2, now=3, expiration=5)

        assert registry.snapshot(7) == [(_identity(q="b"), 2)]


class TestSnapshot:

    def test_sorted_by_identity(self):
        registry = MetricRegistry()
        registry.upsert(_identity("b"), 1, now=0)
        registry.upsert(_identity("a", x="2"), 2, now=0)
        registry.upsert(_identity("a", x="1"), 3, now=0)

        assert [str(identity) for identity, _ in registry.snapshot(0)] == ['a{x="1"}', 'a{x="2"}', "b{}"]

    def test_snapshot_does_not_mutate(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0, expiration=5)

        assert registry.snapshot(1) == registry.snapshot(1)

    def test_upsert_replaces_value(self):
        registry = MetricRegistry()
        registry.upsert(_identity(), 1, now=0)
        registry.upsert(_identity(), 2, now=1)

        assert registry.snapshot(1) == [(_identity(), 2)]
        assert len(registry) == 1

    def test_concurrent_upserts(self):
        registry = MetricRegistry()

        def writer(worker):
            for i in range(200):
                registry.upsert(_identity(worker=str(worker), i=str(i % 20)), i, now=0)

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry.snapshot(0)) == 8 * 20


class TestCollisions:

    def test_warns_once_per_pair(self, caplog):
        registry = MetricRegistry()
        with caplog.at_level(logging.WARNING):
            registry.upsert(_identity(), 1, now=0, owner="q1")
            registry.upsert(_identity(), 2, now=1, owner="q2")
            registry.upsert(_identity(), 3, now=2, owner="q1")

        warnings = [r for r in caplog.records if "written by both" in r.getMessage()]
        assert len(warnings) == 1
        assert registry.snapshot(2) == [(_identity(), 3)]

    def test_same_owner_is_not_a_collision(self, caplog):
        registry = MetricRegistry()
        with caplog.at_level(logging.WARNING):
            registry.upsert(_identity(), 1, now=0, owner="q1")
            registry.upsert(_identity(), 2, now=1, owner="q1")

        assert not [r for r in caplog.records if "written by both" in r.getMessage()]


class TestRegistryCollector:

    def _render(self, registry, now):
        exposition = CollectorRegistry(auto_describe=False)
        exposition.register(RegistryCollector(registry, clock=lambda: now))
        return generate_latest(exposition).decode()

    def test_renders_gauges(self):
        registry = MetricRegistry()
        registry.upsert(_identity("pg_connections", state="idle"), 10, now=0, description="Open connections")
        registry.upsert(_identity("pg_connections", state="active"), 3, now=0, description="Open connections")

        output = self._render(registry, 0)
        assert "# HELP pg_connections Open connections" in output
        assert "# TYPE pg_connections gauge" in output
        assert 'pg_connections{state="active"} 3.0' in output
        assert 'pg_connections{state="idle"} 10.0' in output

    def test_differing_label_names(self):
        registry = MetricRegistry()
        registry.upsert(_identity("m", kind="a"), 1, now=0)
        registry.upsert(_identity("m", kind="b", extra="x"), 2, now=0)

        output = self._render(registry, 0)
        assert 'm{kind="a"} 1.0' in output
        assert 'm{extra="x",kind="b"} 2.0' in output

    def test_expired_records_are_not_rendered(self):
        registry = MetricRegistry()
        registry.upsert(_identity("old"), 1, now=0, expiration=5)
        registry.upsert(_identity("fresh"), 1, now=0)

        output = self._render(registry, 60)
        assert "old" not in output
        assert "fresh 1.0" in output

    def test_empty_registry(self):
        assert self._render(MetricRegistry(), 0) == ""
