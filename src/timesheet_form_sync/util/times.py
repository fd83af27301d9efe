from __future__ import annotations

import re


_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Rows are tracked on a quarter-hour grid.
TIME_INCREMENT_MINUTES = 15


class TimeFormatError(ValueError):
    """
    Raised for wall-clock strings that are not strict `HH:MM`, or for spans that run backwards.
    """


def parse_hhmm(value: str) -> int:
    """
    Parse a strict `HH:MM` wall-clock string into minutes since midnight.

    Exactly two numeric parts are accepted; hours must be 0-23 and minutes 0-59.
    """
    if value is None:
        raise TimeFormatError("time value is None")
    s = str(value).strip()
    m = _HHMM_RE.match(s)
    if not m:
        raise TimeFormatError(f"Invalid time {value!r}; expected HH:MM")
    hours = int(m.group(1))
    minutes = int(m.group(2))
    if hours > 23 or minutes > 59:
        raise TimeFormatError(f"Invalid time {value!r}; hours must be 0-23 and minutes 0-59")
    return hours * 60 + minutes


def format_hhmm(minutes: int) -> str:
    if minutes < 0 or minutes >= 24 * 60:
        raise TimeFormatError(f"Minutes out of range for a single day: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def span_minutes(time_in: str, time_out: str) -> int:
    start = parse_hhmm(time_in)
    end = parse_hhmm(time_out)
    if end < start:
        raise TimeFormatError(f"End time {time_out} is before start time {time_in}")
    return end - start
