import datetime                 # For handling datetime values and formatting
import logging

import pytz
import structlog
import tzlocal

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


class TZFormatter(logging.Formatter):
    """Logging formatter that renders times in a given tzinfo (pytz).

    Usage: set handler.setFormatter(TZFormatter(fmt, datefmt, tz=tzobj))
    """
    def __init__(self, fmt=None, datefmt=None, tz=None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record, datefmt=None):
        # record.created is a POSIX timestamp
        dt = datetime.datetime.fromtimestamp(record.created, tz=self.tz or datetime.timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec='milliseconds')


def get_timezone(tz_name):
    """Resolves 'system' to the local zone, anything else through pytz. Raises pytz.UnknownTimeZoneError."""
    if not tz_name or tz_name == 'system':
        return tzlocal.get_localzone()
    return pytz.timezone(tz_name)


def json_formatter():
    """One JSON object per line: event, level and an ISO UTC timestamp."""
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
        ],
    )


def apply_logging_timezone(tzinfo):
    """Replace formatters on existing root handlers to use tzinfo for timestamps."""
    for h in logging.root.handlers:
        h.setFormatter(TZFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT, tz=tzinfo))


def setup_logging(debug=False, verbose=False, tz_name='system', json_log=False):
    """
    Configures root logging: WARNING by default, INFO with verbose, DEBUG with debug.
    Timestamps are rendered in tz_name; an unknown zone falls back to UTC with a warning.
    With json_log every record is written as a JSON object with a UTC timestamp instead.
    """
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, force=True)
    if json_log:
        for h in logging.root.handlers:
            h.setFormatter(json_formatter())
        return datetime.timezone.utc
    try:
        tzinfo = get_timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logging.warning(f"Invalid timezone '{tz_name}'; falling back to UTC")
        tzinfo = datetime.timezone.utc
    apply_logging_timezone(tzinfo)
    logging.debug(f"Applied logging timezone: {tzinfo}")
    return tzinfo
