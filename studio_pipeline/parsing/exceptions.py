"""Exceptions raised while parsing report files."""

from typing import List, Optional


class ParseError(Exception):
    """A report is structurally unusable (no header, missing required columns).

    Row-level problems never raise; they are returned as warnings instead.
    """

    def __init__(self, message: str, missing_columns: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_columns = missing_columns or []
