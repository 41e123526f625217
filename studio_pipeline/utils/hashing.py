"""Hashing utilities for natural record keys.

Some report rows have no single business identifier (a first visit, a
registration). Their key is a SHA256 over the normalized identifying fields,
so the same row re-fetched in an overlapping window maps to the same key.
"""

import hashlib
import re
from typing import Optional


def compute_record_key(category: str, *parts: Optional[str]) -> str:
    """Compute a deterministic key for a row from its identifying fields.

    Args:
        category: Report category the row belongs to
        *parts: Identifying field values; None and blank values hash as empty

    Returns:
        Hexadecimal SHA256 digest (64 characters)

    Example:
        >>> compute_record_key("firstVisits", "Ada Lovelace", "Vinyasa Flow", "2026-02-24")
        '...'
    """
    normalized = [category.strip()]
    normalized.extend(_normalize_text(part) for part in parts)
    return hash_string("|".join(normalized))


def _normalize_text(text: Optional[str]) -> str:
    """Lowercase, trim and collapse whitespace so formatting noise hashes equally."""
    if text is None:
        return ""
    return re.sub(r"\s+", " ", str(text).strip().lower())


def hash_string(value: str) -> str:
    """Compute the SHA256 hex digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
