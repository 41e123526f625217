"""Union.fit report fetcher."""

import re
from datetime import datetime
from typing import Callable, Dict, Optional

import requests

from studio_pipeline.config.models import DEFAULT_UNION_REPORTS
from studio_pipeline.domain.models import FetchWindow, RawReport, ReportCategory
from studio_pipeline.logging import get_logger
from studio_pipeline.utils.timestamps import utc_now

from .base import BaseFetcher
from .exceptions import FetchError, FetcherConfigurationError, FetchResponseError

logger = get_logger(__name__, component="fetcher")

_FILENAME = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


class UnionReportFetcher(BaseFetcher):
    """Fetcher for Union.fit studio reports.

    API Details:
        Endpoint: {base_url}/api/v1/reports/{slug}?start_date=...&end_date=...
        Authentication: Bearer token
        Response: CSV body, a JSON array of rows, or ``{"data": [...]}``.
        Large exports answer 202 (or ``{"status": "queued"}``) and are
        delivered to the report inbox instead; those are handed to the
        email fetcher and tagged ``deliveryMethod=email``.
    """

    name = "union"

    def __init__(
        self,
        api_token: Optional[str],
        base_url: str = "https://www.union.fit",
        reports: Optional[Dict[str, str]] = None,
        email_fetcher=None,
        timeout: int = 60,
        user_agent: str = "StudioPipeline/1.0",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent)
        if not api_token:
            raise FetcherConfigurationError("UNION_API_TOKEN is not set")

        self.base_url = base_url.rstrip("/")
        self.reports = {
            ReportCategory(key): slug for key, slug in (reports or DEFAULT_UNION_REPORTS).items()
        }
        self.categories = frozenset(self.reports)
        self.email_fetcher = email_fetcher
        self._clock = clock
        self._session.headers.update({"Authorization": f"Bearer {api_token}"})

    def fetch(self, category: ReportCategory, window: FetchWindow) -> RawReport:
        slug = self.reports.get(category)
        if slug is None:
            raise FetcherConfigurationError(f"No Union.fit report configured for {category.value}")

        url = f"{self.base_url}/api/v1/reports/{slug}"
        params = {"start_date": window.since.isoformat(), "end_date": window.until.isoformat()}
        requested_at = self._clock()

        logger.info(
            f"Requesting {category.label} from Union.fit",
            extra={
                "event": "fetcher.union.requested",
                "category": category.value,
                "since": window.since,
                "until": window.until,
            },
        )

        response = self._request(url, params=params)
        if response.status_code == 202:
            return self._await_email(category, requested_at)

        if "json" in response.headers.get("Content-Type", "").lower():
            payload = self._json(response)
            if isinstance(payload, dict) and payload.get("status") == "queued":
                return self._await_email(category, requested_at)

            rows = payload.get("data") if isinstance(payload, dict) else payload
            if not isinstance(rows, list):
                raise FetchResponseError(
                    f"Expected a list of rows for {category.value}, got {type(rows).__name__}"
                )
            return RawReport(content=rows, metadata={"url": url, "rows": len(rows)})

        return RawReport(
            content=response.content,
            filename=_filename(response) or f"{category.value}.csv",
            metadata={"url": url, "bytes": len(response.content)},
        )

    def _await_email(self, category: ReportCategory, requested_at: datetime) -> RawReport:
        if self.email_fetcher is None:
            raise FetchError(
                f"Union.fit queued the {category.label} export for email delivery "
                f"but no report inbox is configured"
            )
        if not self.email_fetcher.supports(category):
            raise FetchError(
                f"Union.fit queued the {category.label} export for email delivery "
                f"but the report inbox does not recognize that report"
            )

        logger.info(
            f"{category.label} export queued; waiting for email delivery",
            extra={"event": "fetcher.union.email_handoff", "category": category.value},
        )
        return self.email_fetcher.wait_for_report(category, requested_at)


def _filename(response: requests.Response) -> Optional[str]:
    match = _FILENAME.search(response.headers.get("Content-Disposition", ""))
    return match.group(1) if match else None
