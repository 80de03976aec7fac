"""
Turns a query result set into metric observations.

Rules, per value spec:
  single          one observation from the named field, or from the first column when no field is named
  multi_labels    one observation per field, all with the query's metric name and each with its own labels
  multi_suffixes  one observation per field, named <metric_name>_<suffix>

Without var_labels only the first row is read and additional rows are ignored.
With var_labels every row is read and yields its own label set, filled from that row's text columns.
"""

from .config import FieldType
from .errors import QueryError
from .registry import MetricIdentity


def cast_value(value, field_type):
    """
    Returns value if it matches the declared type, otherwise raises TypeError.
    No implicit conversion: int columns must come back as int, float columns as float.
    """
    if field_type is FieldType.INT:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(value, float):
        return value
    raise TypeError(f"{type(value).__name__} value {value!r} is not {field_type.value}")


def _read(query, rows, row, column):
    try:
        return rows.value(row, column)
    except KeyError:
        raise QueryError("missing_column", query.query, f"column '{column}' not found in result set "
                                                        f"(columns: {', '.join(rows.columns)})") from None


def _label_values(query, rows, row):
    labels = {}
    for name in query.var_labels:
        value = _read(query, rows, row, name)
        if not isinstance(value, str):
            raise QueryError("type_mismatch", query.query,
                             f"label column '{name}' must be text, got {type(value).__name__} {value!r}")
        labels[name] = value
    return labels


def map_rows(query, rows):
    """
    Maps rows of one query to a list of (MetricIdentity, value).
    All-or-nothing: any missing column or type mismatch raises QueryError and nothing is returned.
    """
    if len(rows) == 0:
        if query.var_labels:
            return []
        raise QueryError("empty", query.query, "query returned no rows")

    targets = query.targets()
    row_indexes = range(len(rows)) if query.var_labels else [0]
    observations = []
    for row in row_indexes:
        var_labels = _label_values(query, rows, row)
        for target in targets:
            column = 0 if target.field is None else target.field
            raw = _read(query, rows, row, column)
            try:
                value = cast_value(raw, target.type)
            except TypeError as e:
                raise QueryError("type_mismatch", query.query, f"column '{column}': {e}") from None
            identity = MetricIdentity.create(target.name, {**target.labels, **var_labels})
            observations.append((identity, value))
    return observations


def descriptions(query):
    """HELP text for every metric name the query produces."""
    return {target.name: target.description for target in query.targets()}
