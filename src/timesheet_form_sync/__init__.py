"""
Timesheet form sync: push locally tracked timesheet rows into the quarterly vendor web form.
"""

__version__ = "0.1.0"
