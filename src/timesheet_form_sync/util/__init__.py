from .dates import format_us_date, parse_entry_date, parse_iso_date, parse_us_date, try_parse_entry_date
from .times import TimeFormatError, format_hhmm, parse_hhmm, span_minutes

__all__ = [
    "format_us_date",
    "parse_entry_date",
    "parse_iso_date",
    "parse_us_date",
    "try_parse_entry_date",
    "TimeFormatError",
    "format_hhmm",
    "parse_hhmm",
    "span_minutes",
]
