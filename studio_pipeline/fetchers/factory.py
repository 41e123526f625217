"""Factory for building the per-category fetcher registry from configuration."""

from typing import Dict, Optional

from studio_pipeline.config.environment import EnvironmentConfig
from studio_pipeline.config.models import AppConfig
from studio_pipeline.domain.models import CATEGORY_ORDER, ReportCategory
from studio_pipeline.logging import get_logger

from .email import EmailAttachmentFetcher
from .exceptions import FetcherConfigurationError
from .shopify import ShopifyOrderFetcher
from .union import UnionReportFetcher

logger = get_logger(__name__, component="fetcher")


class FetcherRegistry:
    """Maps each report category to the fetcher that produces it.

    Categories whose source is enabled but cannot be built (usually missing
    credentials) are remembered with the reason, so the run reports them as
    failed instead of silently skipping them.
    """

    def __init__(self, fetchers=None, unavailable: Optional[Dict[ReportCategory, str]] = None):
        self._fetchers = dict(fetchers or {})
        self._unavailable = dict(unavailable or {})

    def get(self, category: ReportCategory):
        """Fetcher for ``category``, or None when no source provides it.

        Raises:
            FetcherConfigurationError: If the category's source is enabled but
                misconfigured
        """
        if category in self._unavailable:
            raise FetcherConfigurationError(self._unavailable[category])
        return self._fetchers.get(category)

    def categories(self):
        return sorted(set(self._fetchers) | set(self._unavailable), key=CATEGORY_ORDER.index)

    def close(self) -> None:
        for fetcher in {id(f): f for f in self._fetchers.values()}.values():
            close = getattr(fetcher, "close", None)
            if close is not None:
                close()


def build_fetchers(app_config: AppConfig, env_config: EnvironmentConfig) -> FetcherRegistry:
    """Instantiate every enabled source and index it by category.

    Union.fit categories fall back to the report inbox when Union.fit is
    disabled but the inbox is enabled.

    Example:
        >>> registry = build_fetchers(load_config(), load_environment_config())
        >>> fetcher = registry.get(ReportCategory.ORDERS)
    """
    sources = app_config.sources
    advanced = app_config.advanced
    fetchers = {}
    unavailable: Dict[ReportCategory, str] = {}

    email_fetcher = None
    if sources.email.enabled:
        try:
            email_fetcher = EmailAttachmentFetcher(
                host=env_config.inbox_host,
                user=env_config.inbox_user,
                password=env_config.inbox_password,
                port=env_config.inbox_port,
                mailbox=sources.email.mailbox,
                sender=sources.email.sender,
                poll_interval_seconds=sources.email.poll_interval_seconds,
                poll_timeout_seconds=sources.email.poll_timeout_seconds,
            )
        except FetcherConfigurationError as e:
            _log_unavailable("email", e)
            if not sources.union.enabled:
                unavailable.update({c: str(e) for c in EmailAttachmentFetcher.categories})

    union_categories = [ReportCategory(key) for key in sources.union.reports]
    if sources.union.enabled:
        try:
            union = UnionReportFetcher(
                api_token=env_config.union_api_token,
                base_url=env_config.union_base_url or sources.union.base_url,
                reports=sources.union.reports,
                email_fetcher=email_fetcher if sources.union.email_fallback else None,
                timeout=advanced.http_request_timeout,
                user_agent=advanced.user_agent,
            )
            fetchers.update({c: union for c in union.categories})
        except FetcherConfigurationError as e:
            _log_unavailable("union", e)
            unavailable.update({c: str(e) for c in union_categories})
    elif email_fetcher is not None:
        fetchers.update({c: email_fetcher for c in email_fetcher.categories})

    if sources.shopify.enabled:
        shopify_config = sources.shopify
        try:
            fetchers[ReportCategory.SHOPIFY_ORDERS] = ShopifyOrderFetcher(
                store_domain=env_config.shopify_store_domain,
                access_token=env_config.shopify_access_token,
                api_version=shopify_config.api_version,
                page_size=shopify_config.page_size,
                throttle_threshold=shopify_config.throttle_threshold,
                throttle_delay_seconds=shopify_config.throttle_delay_seconds,
                timeout=advanced.http_request_timeout,
                user_agent=advanced.user_agent,
            )
        except FetcherConfigurationError as e:
            _log_unavailable("shopify", e)
            unavailable[ReportCategory.SHOPIFY_ORDERS] = str(e)

    registry = FetcherRegistry(fetchers, unavailable)
    logger.info(
        f"Configured fetchers for {len(fetchers)} categories",
        extra={
            "event": "fetcher.registry.built",
            "categories": [c.value for c in registry.categories() if c in fetchers],
            "unavailable": sorted(c.value for c in unavailable),
        },
    )
    return registry


def _log_unavailable(source: str, error: Exception) -> None:
    logger.warning(
        f"{source} source enabled but not usable: {error}",
        extra={"event": "fetcher.source.unavailable", "source": source},
    )
