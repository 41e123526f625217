"""Base fetcher class with shared HTTP handling for all report sources.

Every source fetcher turns a (category, window) request into a RawReport.
Fetchers hold no shared mutable state beyond their own HTTP session, so the
orchestrator can safely abandon a call that is still in flight.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional

import requests

from studio_pipeline.domain.models import FetchWindow, RawReport, ReportCategory
from studio_pipeline.logging import get_logger

from .exceptions import (
    AuthExpiredError,
    FetcherConfigurationError,
    FetchHTTPError,
    FetchResponseError,
    FetchTimeoutError,
)

logger = get_logger(__name__, component="fetcher")


class BaseFetcher(ABC):
    """Base class for all source fetchers.

    Attributes:
        name: Short source name used in logs and warnings
        categories: Report categories this fetcher can produce
        timeout: HTTP request timeout in seconds
        user_agent: User-Agent header for HTTP requests
    """

    name = "base"
    categories: FrozenSet[ReportCategory] = frozenset()

    def __init__(self, timeout: int = 60, user_agent: str = "StudioPipeline/1.0") -> None:
        """Initialize the shared HTTP session.

        Raises:
            FetcherConfigurationError: If timeout is outside 5-600 seconds or
                user_agent is empty
        """
        if not 5 <= timeout <= 600:
            raise FetcherConfigurationError(
                f"Timeout must be between 5 and 600 seconds, got: {timeout}"
            )
        if not user_agent or not user_agent.strip():
            raise FetcherConfigurationError("user_agent cannot be empty")

        self.timeout = timeout
        self.user_agent = user_agent.strip()

        self._session = requests.Session()
        self._session.headers.update({"User-Agent": self.user_agent})

    @abstractmethod
    def fetch(self, category: ReportCategory, window: FetchWindow) -> RawReport:
        """Fetch the raw report for ``category`` covering ``window``.

        Implementations must:
        1. Request data for the inclusive window from the external source
        2. Return it unparsed as a RawReport, tagging the delivery method
        3. Raise a FetchError subclass on any failure

        Raises:
            FetchError: On any failure; AuthExpiredError when credentials are
                rejected
        """

    def close(self) -> None:
        self._session.close()

    def _request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """Send an HTTP request and map failures onto FetchError subclasses.

        Returns:
            The response, for any status below 400

        Raises:
            AuthExpiredError: On 401/403
            FetchHTTPError: On other 4xx/5xx statuses or connection failures
            FetchTimeoutError: On request timeout
        """
        try:
            logger.debug(
                f"HTTP {method} request to {url}",
                extra={
                    "event": "fetcher.request",
                    "fetcher": self.name,
                    "method": method,
                    "url": url,
                    "timeout": self.timeout,
                },
            )
            response = self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.warning(
                f"Request to {url} timed out after {self.timeout} seconds",
                extra={"event": "fetcher.timeout", "fetcher": self.name, "url": url},
            )
            raise FetchTimeoutError(
                f"Request to {url} timed out after {self.timeout} seconds",
                url=url,
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(
                f"Request to {url} failed: {e}",
                extra={
                    "event": "fetcher.error",
                    "fetcher": self.name,
                    "error_type": type(e).__name__,
                    "url": url,
                },
            )
            raise FetchHTTPError(f"Request to {url} failed: {e}", status_code=0, url=url) from e

        if response.status_code in (401, 403):
            logger.error(
                f"{self.name} rejected credentials ({response.status_code})",
                extra={
                    "event": "fetcher.auth_expired",
                    "fetcher": self.name,
                    "status_code": response.status_code,
                    "url": url,
                },
            )
            raise AuthExpiredError(
                f"HTTP {response.status_code}: {self.name} session expired or unauthorized",
                status_code=response.status_code,
                url=url,
            )

        if response.status_code >= 400:
            retryable = response.status_code >= 500
            logger.log(
                logging.WARNING if retryable else logging.ERROR,
                f"HTTP {response.status_code} error from {url}",
                extra={
                    "event": "fetcher.retryable_error" if retryable else "fetcher.error",
                    "fetcher": self.name,
                    "status_code": response.status_code,
                    "url": url,
                },
            )
            raise FetchHTTPError(
                f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
                url=url,
            )

        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FetchResponseError(
                f"Failed to parse JSON response from {response.url}: {e}"
            ) from e
