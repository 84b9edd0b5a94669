"""
Core Utilities Package

This package contains utility functions and helpers used throughout the application.

Modules:
    - time: Timestamp parsing and normalization utilities
"""

from core.utils.time import to_utc_datetime, parse_exchange_time

__all__ = ["to_utc_datetime", "parse_exchange_time"]
