import dataclasses
import logging                  # For structured logging
import os
import re                       # For env placeholders, durations and name checks
from collections import namedtuple
from enum import Enum
from types import MappingProxyType
from typing import Optional

import yaml                     # For loading the scrape config

from .errors import ConfigError

DEFAULT_SCRAPE_INTERVAL = 1800.0
DEFAULT_QUERY_TIMEOUT = 10.0
DEFAULT_BACKOFF_INTERVAL = 10.0
DEFAULT_MAX_BACKOFF_INTERVAL = 300.0
DEFAULT_METRIC_EXPIRATION_TIME = 0.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_PORT = 5432

SSL_MODES = ("disable", "prefer", "require", "verify-ca", "verify-full")

ENV_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class FieldType(Enum):
    INT = "int"
    FLOAT = "float"


@dataclasses.dataclass(frozen=True)
class Single:
    field: Optional[str] = None
    type: FieldType = FieldType.INT


@dataclasses.dataclass(frozen=True)
class LabelledField:
    field: str
    type: FieldType
    labels: MappingProxyType


@dataclasses.dataclass(frozen=True)
class MultiLabels:
    fields: tuple


@dataclasses.dataclass(frozen=True)
class SuffixedField:
    field: str
    type: FieldType
    suffix: str


@dataclasses.dataclass(frozen=True)
class MultiSuffixes:
    fields: tuple


# One metric a query writes per result row: where the value comes from and what it is called.
MetricTarget = namedtuple("MetricTarget", "field type name labels description")


@dataclasses.dataclass(frozen=True)
class ResolvedQuery:
    source: str
    dbname: str
    path: str
    query: str
    metric_name: str
    description: str
    metric_prefix: str
    scrape_interval: float
    query_timeout: float
    backoff_interval: float
    max_backoff_interval: float
    metric_expiration_time: float
    const_labels: MappingProxyType
    var_labels: tuple
    values: object

    def targets(self):
        """
        Expands the value spec into the metrics this query produces.
        Field labels of multi_labels entries are laid over the constant labels.
        """
        values = self.values
        if isinstance(values, Single):
            return [MetricTarget(values.field, values.type, self.metric_name,
                                 dict(self.const_labels), self.description)]
        if isinstance(values, MultiLabels):
            return [MetricTarget(v.field, v.type, self.metric_name,
                                 {**self.const_labels, **v.labels}, self.description)
                    for v in values.fields]
        return [MetricTarget(v.field, v.type, f"{self.metric_name}_{v.suffix}",
                             dict(self.const_labels), f"{self.description}: {v.suffix}")
                for v in values.fields]


@dataclasses.dataclass(frozen=True)
class ResolvedDatabase:
    source: str
    dbname: str
    host: str
    port: int
    user: str
    password: str = dataclasses.field(repr=False)
    sslmode: str = "prefer"
    sslrootcert: str = ""
    sslcert: str = ""
    sslkey: str = ""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    backoff_interval: float = DEFAULT_BACKOFF_INTERVAL
    max_backoff_interval: float = DEFAULT_MAX_BACKOFF_INTERVAL
    queries: tuple = ()

    @property
    def name(self):
        return f"{self.source}/{self.dbname}"

    def __str__(self):
        return f"host: {self.host}, port: {self.port}, user: {self.user}, dbname: {self.dbname}"


@dataclasses.dataclass(frozen=True)
class ScrapeConfig:
    databases: tuple = ()

    def __len__(self):
        return len(self.databases)

    def is_empty(self):
        return not self.databases

    def queries(self):
        return [q for db in self.databases for q in db.queries]


_DURATION_UNITS = {
    'ms': 0.001, 'msec': 0.001,
    's': 1, 'sec': 1, 'secs': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'mins': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hr': 3600, 'hour': 3600, 'hours': 3600,
    'd': 86400, 'day': 86400, 'days': 86400,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
_PLAIN_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")


def parse_duration(s):
    """
    Converts a duration string like '500ms', '10s', '5m', '2h', '1h30m' or '1m 30s' into seconds (float).
    Bare numbers are seconds.
    """
    if isinstance(s, bool):
        raise ValueError(f"Unrecognized duration format: {s}")
    if isinstance(s, (int, float)):
        if s < 0:
            raise ValueError(f"Duration must not be negative: {s}")
        return float(s)

    s = str(s).strip().lower()
    if _PLAIN_NUMBER.match(s):
        return float(s)

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(s):
        if s[pos:match.start()].strip():
            raise ValueError(f"Unrecognized duration format: {s}")
        unit = match.group(2)
        if unit not in _DURATION_UNITS:
            raise ValueError(f"Unknown unit '{unit}' in duration: {s}")
        total += float(match.group(1)) * _DURATION_UNITS[unit]
        pos = match.end()
    if pos == 0 or s[pos:].strip():
        raise ValueError(f"Unrecognized duration format: {s}")
    return total


def parse_sslmode(value):
    value = str(value).strip().lower()
    if value not in SSL_MODES:
        raise ValueError(f"sslmode must be one of {', '.join(SSL_MODES)}, got '{value}'")
    return value


def substitute_env(text, environ=None):
    """
    Replaces every ${NAME} in text with the value of environment variable NAME.
    Unset variables are substituted with an empty string.
    """
    environ = os.environ if environ is None else environ

    def replace(match):
        name = match.group(1)
        if name not in environ:
            logging.warning(f"Environment variable '{name}' is not set, substituting empty string")
            return ""
        return environ[name]

    return ENV_PLACEHOLDER.sub(replace, text)


ALL_SCOPES = ("defaults", "source", "database", "query")
CONNECTION_SCOPES = ("defaults", "source")

# Fields that cascade query -> database -> source -> defaults -> built-in default.
FIELDS = {
    "scrape_interval": (ALL_SCOPES, parse_duration, DEFAULT_SCRAPE_INTERVAL),
    "query_timeout": (ALL_SCOPES, parse_duration, DEFAULT_QUERY_TIMEOUT),
    "backoff_interval": (ALL_SCOPES, parse_duration, DEFAULT_BACKOFF_INTERVAL),
    "max_backoff_interval": (ALL_SCOPES, parse_duration, DEFAULT_MAX_BACKOFF_INTERVAL),
    "metric_expiration_time": (ALL_SCOPES, parse_duration, DEFAULT_METRIC_EXPIRATION_TIME),
    "metric_prefix": (ALL_SCOPES, str, ""),
    "sslmode": (CONNECTION_SCOPES, parse_sslmode, "prefer"),
    "sslrootcert": (CONNECTION_SCOPES, str, ""),
    "sslcert": (CONNECTION_SCOPES, str, ""),
    "sslkey": (CONNECTION_SCOPES, str, ""),
    "connect_timeout": (CONNECTION_SCOPES, parse_duration, DEFAULT_CONNECT_TIMEOUT),
}


def _scope_fields(scope):
    return {name for name, (scopes, _, _) in FIELDS.items() if scope in scopes}


TOP_LEVEL_KEYS = {"defaults", "sources"}
DEFAULTS_KEYS = _scope_fields("defaults")
SOURCE_KEYS = {"host", "port", "user", "password", "databases"} | _scope_fields("source")
DATABASE_KEYS = {"dbname", "queries"} | _scope_fields("database")
QUERY_KEYS = {"query", "metric_name", "description", "const_labels", "var_labels", "values"} | _scope_fields("query")
VALUES_KEYS = ("single", "multi_labels", "multi_suffixes")
SINGLE_KEYS = {"field", "type"}
MULTI_LABELS_KEYS = {"field", "type", "labels"}
MULTI_SUFFIXES_KEYS = {"field", "type", "suffix"}


def resolve_field(name, layers):
    """
    Walks (mapping, path) layers nearest first and returns the raw value and path
    of the first layer that sets the field, or (None, None). YAML null counts as unset.
    """
    for values, path in layers:
        value = values.get(name)
        if value is not None:
            return value, f"{path}.{name}" if path else name
    return None, None


def _check_keys(mapping, allowed, path):
    unknown = sorted(str(k) for k in mapping if k not in allowed)
    if unknown:
        raise ConfigError("unknown_field", f"{path}.{unknown[0]}" if path else unknown[0],
                          f"unknown field(s): {', '.join(unknown)}")


def _expect_mapping(value, path):
    if not isinstance(value, dict):
        raise ConfigError("invalid_value", path, "expected a mapping")
    return value


def _expect_list(value, path):
    if not isinstance(value, list):
        raise ConfigError("invalid_value", path, "expected a list")
    return value


class _Resolver:
    """Resolves the raw config tree into immutable jobs. One instance per load."""

    def __init__(self, defaults, environ):
        self.defaults = defaults
        self.environ = environ
        self.identities = {}

    def substitute(self, value):
        return substitute_env(str(value), self.environ)

    def field(self, name, layers, positive=False):
        _, parser, default = FIELDS[name]
        raw, path = resolve_field(name, layers)
        if raw is None:
            return default
        if isinstance(raw, str):
            raw = self.substitute(raw)
        try:
            value = parser(raw)
        except ValueError as e:
            raise ConfigError("invalid_value", path, str(e)) from e
        if positive and value <= 0:
            raise ConfigError("invalid_value", path, "must be greater than zero")
        return value

    def required_string(self, mapping, name, path):
        value = mapping.get(name)
        if value is None:
            raise ConfigError("missing", f"{path}.{name}", "mandatory field is missing")
        value = self.substitute(value)
        if not value.strip():
            raise ConfigError("missing", f"{path}.{name}", "mandatory field is empty")
        return value

    def port(self, value, path):
        if value is None:
            return DEFAULT_PORT
        if isinstance(value, str):
            value = self.substitute(value).strip()
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ConfigError("invalid_value", path, f"port must be an integer, got '{value}'") from None
        if not 1 <= port <= 65535:
            raise ConfigError("invalid_value", path, f"port must be in range 1..65535, got {port}")
        return port

    def backoff(self, layers, path):
        backoff_interval = self.field("backoff_interval", layers, positive=True)
        max_backoff_interval = self.field("max_backoff_interval", layers, positive=True)
        if max_backoff_interval < backoff_interval:
            raise ConfigError("invalid_value", f"{path}.max_backoff_interval",
                              f"max_backoff_interval ({max_backoff_interval}s) is less than "
                              f"backoff_interval ({backoff_interval}s)")
        return backoff_interval, max_backoff_interval

    def resolve_source(self, name, source):
        path = f"sources.{name}"
        _expect_mapping(source, path)
        _check_keys(source, SOURCE_KEYS, path)
        connection = {
            "host": self.required_string(source, "host", path),
            "port": self.port(source.get("port"), f"{path}.port"),
            "user": self.required_string(source, "user", path),
            "password": self.substitute(source["password"]) if source.get("password") is not None else None,
        }
        if connection["password"] is None:
            raise ConfigError("missing", f"{path}.password", "mandatory field is missing")

        databases = source.get("databases")
        databases = [] if databases is None else _expect_list(databases, f"{path}.databases")
        parents = [(source, path), (self.defaults, "defaults")]
        if not databases:
            logging.warning(f"Source '{name}' has no databases configured")
        return [self.resolve_database(name, connection, db, f"{path}.databases[{i}]", parents)
                for i, db in enumerate(databases)]

    def resolve_database(self, source_name, connection, database, path, parents):
        _expect_mapping(database, path)
        _check_keys(database, DATABASE_KEYS, path)
        layers = [(database, path)] + parents
        dbname = self.required_string(database, "dbname", path)

        sslcert = self.field("sslcert", layers)
        sslkey = self.field("sslkey", layers)
        if bool(sslcert) != bool(sslkey):
            missing = "sslkey" if sslcert else "sslcert"
            raise ConfigError("invalid_value", f"{path}.{missing}",
                              "client certificate and private key must be set together")
        backoff_interval, max_backoff_interval = self.backoff(layers, path)

        queries = database.get("queries")
        queries = [] if queries is None else _expect_list(queries, f"{path}.queries")
        resolved = tuple(self.resolve_query(source_name, dbname, q, f"{path}.queries[{i}]", layers)
                         for i, q in enumerate(queries))

        return ResolvedDatabase(
            source=source_name,
            dbname=dbname,
            host=connection["host"],
            port=connection["port"],
            user=connection["user"],
            password=connection["password"],
            sslmode=self.field("sslmode", layers),
            sslrootcert=self.field("sslrootcert", layers),
            sslcert=sslcert,
            sslkey=sslkey,
            connect_timeout=self.field("connect_timeout", layers, positive=True),
            backoff_interval=backoff_interval,
            max_backoff_interval=max_backoff_interval,
            queries=resolved,
        )

    def resolve_query(self, source_name, dbname, query, path, parents):
        _expect_mapping(query, path)
        _check_keys(query, QUERY_KEYS, path)
        layers = [(query, path)] + parents

        sql = self.required_string(query, "query", path)
        metric_name = self.required_string(query, "metric_name", path)
        prefix = self.field("metric_prefix", layers)
        if prefix:
            metric_name = f"{prefix}_{metric_name}"
        if not METRIC_NAME.match(metric_name):
            raise ConfigError("invalid_value", f"{path}.metric_name", f"invalid metric name '{metric_name}'")

        description = query.get("description")
        description = metric_name if description is None else self.substitute(description)
        backoff_interval, max_backoff_interval = self.backoff(layers, path)
        # Connection backoff is per database
        for name in ("backoff_interval", "max_backoff_interval"):
            if query.get(name) is not None:
                logging.warning(f"{path}.{name} has no effect, "
                                f"the database level value is used for connection retries")

        resolved = ResolvedQuery(
            source=source_name,
            dbname=dbname,
            path=path,
            query=sql,
            metric_name=metric_name,
            description=description,
            metric_prefix=prefix,
            scrape_interval=self.field("scrape_interval", layers, positive=True),
            query_timeout=self.field("query_timeout", layers, positive=True),
            backoff_interval=backoff_interval,
            max_backoff_interval=max_backoff_interval,
            metric_expiration_time=self.field("metric_expiration_time", layers),
            const_labels=self.labels(query.get("const_labels"), f"{path}.const_labels"),
            var_labels=self.var_labels(query.get("var_labels"), f"{path}.var_labels"),
            values=self.value_spec(query.get("values"), f"{path}.values"),
        )
        self.register_identities(resolved)
        return resolved

    def labels(self, labels, path, required=False):
        if labels is None:
            if required:
                raise ConfigError("missing", path, "mandatory field is missing")
            return MappingProxyType({})
        _expect_mapping(labels, path)
        result = {}
        for key, value in labels.items():
            key = self.substitute(key)
            if not LABEL_NAME.match(key) or key.startswith("__"):
                raise ConfigError("invalid_value", f"{path}.{key}", f"invalid label name '{key}'")
            result[key] = "" if value is None else self.substitute(value)
        return MappingProxyType(result)

    def var_labels(self, var_labels, path):
        if var_labels is None:
            return ()
        _expect_list(var_labels, path)
        result = []
        for i, name in enumerate(var_labels):
            name = self.substitute(name)
            if not LABEL_NAME.match(name) or name.startswith("__"):
                raise ConfigError("invalid_value", f"{path}[{i}]", f"invalid label name '{name}'")
            if name in result:
                raise ConfigError("invalid_value", f"{path}[{i}]", f"duplicate label '{name}'")
            result.append(name)
        return tuple(result)

    def field_type(self, value, path):
        if value is None:
            return FieldType.INT
        try:
            return FieldType(str(value).strip().lower())
        except ValueError:
            raise ConfigError("invalid_value", path, f"type must be 'int' or 'float', got '{value}'") from None

    def value_spec(self, values, path):
        if values is None:
            raise ConfigError("value_spec", path, "one of single, multi_labels or multi_suffixes is required")
        _expect_mapping(values, path)
        _check_keys(values, VALUES_KEYS, path)
        populated = [key for key in VALUES_KEYS if values.get(key) is not None]
        if len(populated) != 1:
            raise ConfigError("value_spec", path,
                              f"exactly one of single, multi_labels or multi_suffixes must be set, "
                              f"got {', '.join(populated) if populated else 'none'}")

        kind = populated[0]
        spec_path = f"{path}.{kind}"
        if kind == "single":
            single = _expect_mapping(values["single"], spec_path)
            _check_keys(single, SINGLE_KEYS, spec_path)
            field = single.get("field")
            return Single(field=None if field is None else self.substitute(field),
                          type=self.field_type(single.get("type"), f"{spec_path}.type"))

        items = _expect_list(values[kind], spec_path)
        if not items:
            raise ConfigError("value_spec", spec_path, "at least one field is required")
        fields = []
        for i, item in enumerate(items):
            item_path = f"{spec_path}[{i}]"
            _expect_mapping(item, item_path)
            if kind == "multi_labels":
                _check_keys(item, MULTI_LABELS_KEYS, item_path)
                fields.append(LabelledField(
                    field=self.required_string(item, "field", item_path),
                    type=self.field_type(item.get("type"), f"{item_path}.type"),
                    labels=self.labels(item.get("labels"), f"{item_path}.labels", required=True),
                ))
            else:
                _check_keys(item, MULTI_SUFFIXES_KEYS, item_path)
                fields.append(SuffixedField(
                    field=self.required_string(item, "field", item_path),
                    type=self.field_type(item.get("type"), f"{item_path}.type"),
                    suffix=self.required_string(item, "suffix", item_path),
                ))
        if kind == "multi_labels":
            return MultiLabels(fields=tuple(fields))
        return MultiSuffixes(fields=tuple(fields))

    def register_identities(self, query):
        """
        Every (metric name, label set) a query can emit must be unique across the whole config.
        Variable labels take part by name since their values are only known at scrape time.
        """
        var_labels = tuple(sorted(query.var_labels))
        for target in query.targets():
            if not METRIC_NAME.match(target.name):
                raise ConfigError("invalid_value", f"{query.path}.values", f"invalid metric name '{target.name}'")
            clash = set(target.labels) & set(query.var_labels)
            if clash:
                raise ConfigError("invalid_value", f"{query.path}.var_labels",
                                  f"label(s) {', '.join(sorted(clash))} defined as both constant and variable")
            key = (target.name, tuple(sorted(target.labels.items())), var_labels)
            if key in self.identities:
                raise ConfigError("duplicate_metric", query.path,
                                  f"metric '{target.name}' with labels {target.labels} "
                                  f"is already produced by {self.identities[key]}")
            self.identities[key] = query.path


def resolve_config(raw, environ=None):
    """
    Resolves a parsed config tree into a ScrapeConfig.
    All-or-nothing: the first violation raises ConfigError.
    """
    if not isinstance(raw, dict):
        raise ConfigError("invalid_value", "", "config must be a mapping with a 'sources' key")
    _check_keys(raw, TOP_LEVEL_KEYS, "")

    defaults = raw.get("defaults")
    defaults = {} if defaults is None else _expect_mapping(defaults, "defaults")
    _check_keys(defaults, DEFAULTS_KEYS, "defaults")

    if "sources" not in raw:
        raise ConfigError("missing", "sources", "mandatory field is missing")
    sources = raw["sources"]
    sources = {} if sources is None else _expect_mapping(sources, "sources")

    resolver = _Resolver(defaults, environ)
    databases = []
    for name, source in sources.items():
        databases.extend(resolver.resolve_source(str(name), source))
    return ScrapeConfig(databases=tuple(databases))


def load_config(path):
    """
    Loads and resolves the scrape config file.
    Returns an immutable ScrapeConfig or raises ConfigError.
    """
    logging.info(f"Loading scrape config from: {path}")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError("file", str(path), f"unable to load config file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError("yaml", str(path), f"unable to parse config: {e}") from e

    config = resolve_config(raw)
    if config.is_empty():
        logging.warning("No databases configured, only an empty metrics endpoint will be served")
    for database in config.databases:
        # Password is never part of the string form
        logging.info(f"Configured database '{database.name}' ({database}) with {len(database.queries)} queries")
    return config
