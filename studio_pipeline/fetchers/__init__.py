"""Source fetchers: pluggable producers of raw reports for a date window."""

from .base import BaseFetcher
from .email import EmailAttachmentFetcher, classify_report
from .exceptions import (
    AuthExpiredError,
    FetcherConfigurationError,
    FetchError,
    FetchHTTPError,
    FetchResponseError,
    FetchTimeoutError,
)
from .factory import FetcherRegistry, build_fetchers
from .shopify import ShopifyOrderFetcher
from .union import UnionReportFetcher

__all__ = [
    "BaseFetcher",
    "UnionReportFetcher",
    "ShopifyOrderFetcher",
    "EmailAttachmentFetcher",
    "classify_report",
    "FetcherRegistry",
    "build_fetchers",
    "FetchError",
    "FetchHTTPError",
    "FetchTimeoutError",
    "FetchResponseError",
    "AuthExpiredError",
    "FetcherConfigurationError",
]
