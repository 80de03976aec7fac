"""
Tests for mapping result rows to metric observations.
"""

import pytest

from conftest import query
from psql_query_exporter.config import FieldType
from psql_query_exporter.db import Rows
from psql_query_exporter.errors import QueryError
from psql_query_exporter.mapper import cast_value, descriptions, map_rows
from psql_query_exporter.registry import MetricIdentity


@pytest.fixture
def build_query(single_query_config):
    def _build(**fields):
        return single_query_config(query(**fields)).queries()[0]
    return _build


def _as_dict(observations):
    return {str(identity): value for identity, value in observations}


class TestSingle:

    def test_first_column_by_default(self, build_query):
        q = build_query(metric_name="m")
        observations = map_rows(q, Rows(["count", "other"], [(7, 8)]))

        assert observations == [(MetricIdentity.create("m"), 7)]

    def test_extra_rows_are_ignored(self, build_query):
        q = build_query(metric_name="m")
        observations = map_rows(q, Rows(["count"], [(1,), (2,), (3,)]))

        assert _as_dict(observations) == {"m{}": 1}

    def test_named_float_field(self, build_query):
        q = build_query(metric_name="m", values={"single": {"field": "ratio", "type": "float"}})
        observations = map_rows(q, Rows(["id", "ratio"], [(1, 0.25)]))

        assert _as_dict(observations) == {"m{}": 0.25}

    def test_column_name_is_case_insensitive(self, build_query):
        q = build_query(metric_name="m", values={"single": {"field": "Total"}})
        observations = map_rows(q, Rows(["total"], [(3,)]))

        assert _as_dict(observations) == {"m{}": 3}

    def test_const_labels(self, build_query):
        q = build_query(metric_name="m", const_labels={"env": "prod"})
        observations = map_rows(q, Rows(["count"], [(1,)]))

        assert _as_dict(observations) == {'m{env="prod"}': 1}


class TestVarLabels:

    def test_one_series_per_row(self, build_query):
        q = build_query(metric_name="connections", var_labels=["state"],
                        values={"single": {"field": "count"}})
        rows = Rows(["state", "count"], [("active", 3), ("idle", 10)])

        assert _as_dict(map_rows(q, rows)) == {
            'connections{state="active"}': 3,
            'connections{state="idle"}': 10,
        }

    def test_combined_with_const_labels(self, build_query):
        q = build_query(metric_name="m", const_labels={"db": "orders"}, var_labels=["state"],
                        values={"single": {"field": "count"}})
        observations = map_rows(q, Rows(["state", "count"], [("active", 3)]))

        assert observations[0][0].label_dict() == {"db": "orders", "state": "active"}

    def test_empty_result_is_not_an_error(self, build_query):
        q = build_query(var_labels=["state"], values={"single": {"field": "count"}})

        assert map_rows(q, Rows(["state", "count"], [])) == []

    def test_label_column_must_be_text(self, build_query):
        q = build_query(var_labels=["state"], values={"single": {"field": "count"}})

        with pytest.raises(QueryError) as e:
            map_rows(q, Rows(["state", "count"], [(1, 3)]))
        assert e.value.kind == "type_mismatch"

    def test_missing_label_column(self, build_query):
        q = build_query(var_labels=["state"], values={"single": {"field": "count"}})

        with pytest.raises(QueryError) as e:
            map_rows(q, Rows(["count"], [(3,)]))
        assert e.value.kind == "missing_column"


class TestMultiLabels:

    def test_one_series_per_field(self, build_query):
        values = {"multi_labels": [
            {"field": "reads", "labels": {"op": "read"}},
            {"field": "writes", "labels": {"op": "write"}},
        ]}
        q = build_query(metric_name="io", const_labels={"disk": "sda"}, values=values)
        observations = map_rows(q, Rows(["reads", "writes"], [(5, 6)]))

        assert _as_dict(observations) == {
            'io{disk="sda",op="read"}': 5,
            'io{disk="sda",op="write"}': 6,
        }

    def test_field_labels_overlay_const_labels(self, build_query):
        values = {"multi_labels": [
            {"field": "a", "labels": {"kind": "a"}},
            {"field": "b", "labels": {"kind": "b"}},
        ]}
        q = build_query(metric_name="m", const_labels={"kind": "base"}, values=values)
        observations = map_rows(q, Rows(["a", "b"], [(1, 2)]))

        assert _as_dict(observations) == {'m{kind="a"}': 1, 'm{kind="b"}': 2}


class TestMultiSuffixes:

    def test_one_metric_per_suffix(self, build_query):
        values = {"multi_suffixes": [
            {"field": "f_int", "type": "int", "suffix": "int_suffix"},
            {"field": "f_float", "type": "float", "suffix": "float_suffix"},
        ]}
        q = build_query(metric_name="m", values=values)
        observations = map_rows(q, Rows(["f_int", "f_float"], [(6, 6.6)]))

        assert _as_dict(observations) == {"m_int_suffix{}": 6, "m_float_suffix{}": 6.6}

    def test_descriptions_per_suffix(self, build_query):
        values = {"multi_suffixes": [{"field": "a", "suffix": "total"}]}
        q = build_query(metric_name="m", description="Rows", values=values)

        assert descriptions(q) == {"m_total": "Rows: total"}


class TestErrors:

    def test_empty_result(self, build_query):
        with pytest.raises(QueryError) as e:
            map_rows(build_query(), Rows(["count"], []))
        assert e.value.kind == "empty"

    def test_missing_column(self, build_query):
        q = build_query(values={"single": {"field": "absent"}})

        with pytest.raises(QueryError) as e:
            map_rows(q, Rows(["count"], [(1,)]))
        assert e.value.kind == "missing_column"
        assert "absent" in e.value.message

    def test_no_columns(self, build_query):
        with pytest.raises(QueryError) as e:
            map_rows(build_query(), Rows([], [()]))
        assert e.value.kind == "missing_column"

    def test_float_declared_int_returned(self, build_query):
        q = build_query(values={"single": {"type": "float"}})

        with pytest.raises(QueryError) as e:
            map_rows(q, Rows(["v"], [(1,)]))
        assert e.value.kind == "type_mismatch"

    def test_all_or_nothing(self, build_query):
        values = {"multi_suffixes": [
            {"field": "good", "suffix": "a"},
            {"field": "bad", "suffix": "b"},
        ]}
        q = build_query(metric_name="m", values=values)

        with pytest.raises(QueryError):
            map_rows(q, Rows(["good", "bad"], [(1, "text")]))


class TestCastValue:

    @pytest.mark.parametrize("value,field_type", [
        (1, FieldType.INT),
        (-5, FieldType.INT),
        (0.5, FieldType.FLOAT),
        (float("nan"), FieldType.FLOAT),
    ])
    def test_matching_types(self, value, field_type):
        result = cast_value(value, field_type)
        assert result is value

    @pytest.mark.parametrize("value,field_type", [
        (1.0, FieldType.INT),
        (True, FieldType.INT),
        ("1", FieldType.INT),
        (None, FieldType.INT),
        (1, FieldType.FLOAT),
        (None, FieldType.FLOAT),
    ])
    def test_mismatches(self, value, field_type):
        with pytest.raises(TypeError):
            cast_value(value, field_type)
