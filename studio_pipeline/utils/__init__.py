"""Utility functions for hashing and time handling."""

from .hashing import compute_record_key, hash_string
from .timestamps import (
    ensure_utc,
    format_timestamp,
    parse_business_date,
    parse_iso_datetime,
    to_epoch_ms,
    utc_now,
)

__all__ = [
    # Hashing
    "compute_record_key",
    "hash_string",
    # Timestamps
    "utc_now",
    "ensure_utc",
    "parse_iso_datetime",
    "parse_business_date",
    "format_timestamp",
    "to_epoch_ms",
]
