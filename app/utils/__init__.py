"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import ensure_utc, parse_timestamp, utc_now

__all__ = ["ensure_utc", "parse_timestamp", "utc_now"]
