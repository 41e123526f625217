"""Report parsing and row validation."""

from .exceptions import ParseError
from .parser import (
    COLUMN_ALIASES,
    MAX_ROW_WARNINGS,
    ParseResult,
    normalize_header,
    parse_money,
    parse_report,
)
from .schemas import (
    SCHEMAS,
    AutoRenewRow,
    FirstVisitRow,
    NewCustomerRow,
    OrderRow,
    RegistrationRow,
    ReportRow,
    RevenueCategoryRow,
    ShopifyOrderRow,
    schema_for,
)

__all__ = [
    "parse_report",
    "normalize_header",
    "parse_money",
    "ParseResult",
    "ParseError",
    "COLUMN_ALIASES",
    "MAX_ROW_WARNINGS",
    "SCHEMAS",
    "schema_for",
    "ReportRow",
    "NewCustomerRow",
    "OrderRow",
    "FirstVisitRow",
    "RegistrationRow",
    "AutoRenewRow",
    "RevenueCategoryRow",
    "ShopifyOrderRow",
]
