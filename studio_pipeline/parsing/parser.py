"""CSV / record parsing with two-tier validation.

Row-level problems (bad currency, unparseable date, failed row validation)
become warnings and parsing continues. A file without a usable header, or
missing a required column, raises ParseError and fails the whole category.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

from pydantic import ValidationError

from studio_pipeline.domain.models import RawReport
from studio_pipeline.logging import get_logger
from studio_pipeline.utils.timestamps import parse_business_date

from .exceptions import ParseError
from .schemas import ReportRow

logger = get_logger(__name__, component="parser")

MAX_ROW_WARNINGS = 10

COLUMN_ALIASES = {
    "subscriptionName": "name",
    "subscriptionState": "state",
    "subscriptionPrice": "price",
    "customerName": "customer",
    "customerEmail": "email",
    "createdAt": "created",
}

_CAMEL_KEY = re.compile(r"^[a-z][a-zA-Z0-9]*$")
_SEPARATOR_RUN = re.compile(r"[^a-z0-9]+(.)")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass
class ParseResult:
    """Parsed rows plus the warnings collected along the way."""

    data: List[ReportRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    total_rows: int = 0
    skipped_rows: int = 0


def normalize_header(header: str) -> str:
    """Normalize a column header to camelCase and apply known aliases.

    Already-camelCase keys only get aliased, so normalization is idempotent.

    Example:
        >>> normalize_header("Customer Email")
        'email'
        >>> normalize_header("Redeemed At")
        'redeemedAt'
    """
    trimmed = header.strip().lstrip("\ufeff")
    if _CAMEL_KEY.match(trimmed):
        return COLUMN_ALIASES.get(trimmed, trimmed)

    camel = _SEPARATOR_RUN.sub(lambda m: m.group(1).upper(), trimmed.lower())
    camel = _NON_ALNUM.sub("", camel)
    if camel:
        camel = camel[0].lower() + camel[1:]
    return COLUMN_ALIASES.get(camel, camel)


def parse_money(value: Any) -> Tuple[Optional[float], bool]:
    """Parse a currency cell. Returns (amount, ok).

    Blank cells give (None, True) and unparseable ones (None, False).

    Example:
        >>> parse_money("$1,234.50")
        (1234.5, True)
    """
    if value is None:
        return None, True
    if isinstance(value, (int, float)):
        return float(value), True

    cleaned = str(value).replace("$", "").replace(",", "").strip()
    if not cleaned:
        return None, True
    # Accounting negatives: (12.00)
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]
    try:
        return float(cleaned), True
    except ValueError:
        return None, False


def parse_report(
    raw: Union[RawReport, bytes, str, Iterable[Mapping[str, Any]]],
    schema: Type[ReportRow],
) -> ParseResult:
    """Parse raw report content into typed rows.

    Args:
        raw: RawReport, CSV bytes/text, or an iterable of row mappings
        schema: ReportRow subclass describing the category

    Returns:
        ParseResult with valid rows and row-level warnings

    Raises:
        ParseError: If the report has no header or lacks required columns
    """
    content = raw.content if isinstance(raw, RawReport) else raw
    result = ParseResult()

    if isinstance(content, (bytes, str)):
        text = _decode(content, result)
        records, headers = _read_csv(text)
    else:
        records = [
            {normalize_header(str(key)): value for key, value in record.items()}
            for record in content
        ]
        headers = set().union(*(r.keys() for r in records)) if records else None

    if headers is not None:
        missing = [col for col in schema.required_columns if col not in headers]
        if missing:
            raise ParseError(
                f"{schema.__name__}: missing required column(s): {', '.join(missing)}",
                missing_columns=missing,
            )

    row_warnings: List[str] = []
    for line_no, record in enumerate(records, start=2):
        result.total_rows += 1
        row = _parse_row(record, schema, line_no, row_warnings)
        if row is None:
            result.skipped_rows += 1
        else:
            result.data.append(row)

    result.warnings.extend(row_warnings[:MAX_ROW_WARNINGS])
    if len(row_warnings) > MAX_ROW_WARNINGS:
        result.warnings.append(f"... and {len(row_warnings) - MAX_ROW_WARNINGS} more row warnings")

    logger.debug(
        f"Parsed {len(result.data)}/{result.total_rows} rows with {schema.__name__}",
        extra={
            "event": "parser.completed",
            "schema": schema.__name__,
            "rows": result.total_rows,
            "valid_rows": len(result.data),
            "skipped_rows": result.skipped_rows,
            "warning_count": len(row_warnings),
        },
    )
    return result


def _decode(content: Union[bytes, str], result: ParseResult) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")

    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        result.warnings.append("Report is not valid UTF-8; undecodable bytes were replaced")
        return content.decode("utf-8-sig", errors="replace")


def _read_csv(text: str) -> Tuple[List[Dict[str, Any]], Optional[set]]:
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ParseError("Report is empty: no header row")

    reader = csv.DictReader(io.StringIO("\n".join(lines)))
    if not reader.fieldnames or not any(name.strip() for name in reader.fieldnames):
        raise ParseError("Report has no header row")

    reader.fieldnames = [normalize_header(name) for name in reader.fieldnames]
    records = [
        {key: value for key, value in row.items() if key is not None}
        for row in reader
    ]
    return records, set(reader.fieldnames)


def _parse_row(
    record: Mapping[str, Any],
    schema: Type[ReportRow],
    line_no: int,
    warnings: List[str],
) -> Optional[ReportRow]:
    cleaned: Dict[str, Any] = {}
    for key, value in record.items():
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        if value is None:
            continue
        cleaned[key] = value

    fields = schema.model_fields
    for name in schema.money_fields:
        alias = fields[name].alias or name
        if alias in cleaned:
            amount, ok = parse_money(cleaned[alias])
            if not ok:
                warnings.append(f"Row {line_no}: unparseable amount '{cleaned[alias]}' in {alias}")
            if amount is None:
                del cleaned[alias]
            else:
                cleaned[alias] = amount

    for name in schema.date_fields:
        alias = fields[name].alias or name
        if alias not in cleaned:
            continue
        if isinstance(cleaned[alias], datetime):
            cleaned[alias] = cleaned[alias].date()
        elif not isinstance(cleaned[alias], date):
            parsed = parse_business_date(str(cleaned[alias]))
            if parsed is None:
                warnings.append(f"Row {line_no}: unparseable date '{cleaned[alias]}' in {alias}")
                del cleaned[alias]
            else:
                cleaned[alias] = parsed

    try:
        return schema.model_validate(cleaned)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        warnings.append(f"Row {line_no}: {details}")
        return None
