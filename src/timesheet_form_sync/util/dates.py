from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional, Union

from dateutil import parser as date_parser


_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_US_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")


def parse_us_date(value: str) -> date:
    """
    Parse dates like:
    - "09/30/2025"
    - "10/1/2025"
    """
    if value is None:
        raise ValueError("parse_us_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_us_date: empty string")
    dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    return dt.date()


def parse_iso_date(value: str) -> date:
    """
    Strict `YYYY-MM-DD`. Rejects impossible calendar dates like 2025-02-30.
    """
    s = (value or "").strip()
    if not _ISO_DATE_RE.match(s):
        raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD")
    return date.fromisoformat(s)


def parse_entry_date(value: Union[str, date]) -> date:
    """
    Accept a `date`, an ISO `YYYY-MM-DD` string, or the form's own `MM/DD/YYYY` format.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = (value or "").strip()
    if _ISO_DATE_RE.match(s):
        return parse_iso_date(s)
    if _US_DATE_RE.match(s):
        return parse_us_date(s)
    raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD or MM/DD/YYYY")


def try_parse_entry_date(value: Union[str, date, None]) -> Optional[date]:
    if value is None:
        return None
    try:
        return parse_entry_date(value)
    except ValueError:
        return None


def format_us_date(d: date) -> str:
    return d.strftime("%m/%d/%Y")
