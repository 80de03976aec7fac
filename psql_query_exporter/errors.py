class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigError(ExporterError):
    """
    Raised while loading the scrape config. Always fatal: the process refuses to start.

    kind is one of: file, yaml, missing, unknown_field, invalid_value, value_spec, duplicate_metric
    """
    def __init__(self, kind, path, message):
        self.kind = kind
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}" if path else message)


class ConnectError(ExporterError):
    """Connection attempt failed (network, auth or TLS). Drives the backoff of one database."""
    def __init__(self, target, cause):
        self.target = target
        self.cause = cause
        super().__init__(f"unable to connect to {target}: {cause}")


class QueryError(ExporterError):
    """
    A single query failed or its result could not be mapped to metrics.

    kind is one of: timeout, execution, type_mismatch, missing_column, empty
    """
    def __init__(self, kind, query, message, connection_broken=False):
        self.kind = kind
        self.query = query
        self.message = message
        self.connection_broken = connection_broken
        super().__init__(f"query '{query}' failed ({kind}): {message}")
