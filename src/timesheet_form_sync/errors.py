from __future__ import annotations


class ConfigurationError(ValueError):
    """
    Raised for problems in static configuration (quarter windows, login steps, field definitions).

    These are fatal at startup and are never retried.
    """


class QuarterConfigError(ConfigurationError):
    """
    Raised when the configured quarter windows overlap, leave a gap, or reuse a form id.
    """
