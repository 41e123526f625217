"""Configuration schema models using Pydantic."""

from datetime import date
from enum import Enum
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, field_validator, model_validator

from studio_pipeline.domain.models import ReportCategory


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


DEFAULT_UNION_REPORTS: Dict[str, str] = {
    ReportCategory.NEW_CUSTOMERS.value: "customers/created_within",
    ReportCategory.ORDERS.value: "transactions/orders",
    ReportCategory.FIRST_VISITS.value: "registrations/first_visit",
    ReportCategory.FULL_REGISTRATIONS.value: "registrations/remaining",
    ReportCategory.CANCELED_AUTO_RENEWS.value: "subscriptions/growth/cancelled",
    ReportCategory.ACTIVE_AUTO_RENEWS.value: "subscriptions/list/active",
    ReportCategory.PAUSED_AUTO_RENEWS.value: "subscriptions/list/paused",
    ReportCategory.TRIALING_AUTO_RENEWS.value: "subscriptions/list/trialing",
    ReportCategory.NEW_AUTO_RENEWS.value: "subscriptions/growth/new",
    ReportCategory.REVENUE_CATEGORIES.value: "revenue/categories",
}


class UnionSourceConfig(BaseModel):
    """Union.fit report export settings."""

    enabled: bool = Field(True, description="Fetch studio reports from Union.fit")
    base_url: str = Field("https://www.union.fit", description="Union.fit base URL")
    reports: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_UNION_REPORTS),
        description="Report slug per category",
    )
    email_fallback: bool = Field(
        True, description="Wait for the emailed export when a report is queued"
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        stripped = v.strip().rstrip("/")
        if not stripped.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return stripped

    @field_validator("reports")
    @classmethod
    def validate_report_keys(cls, v: Dict[str, str]) -> Dict[str, str]:
        known = {c.value for c in ReportCategory}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown report categories: {', '.join(unknown)}")
        return {key: slug.strip().strip("/") for key, slug in v.items()}


class ShopifySourceConfig(BaseModel):
    """Shopify Admin REST API settings for merch orders."""

    enabled: bool = Field(False, description="Fetch merch orders from Shopify")
    api_version: str = Field("2024-01", description="Admin API version")
    page_size: int = Field(250, ge=1, le=250, description="Orders per page")
    throttle_threshold: float = Field(
        0.8, gt=0.0, le=1.0, description="Call-limit usage ratio that triggers a pause"
    )
    throttle_delay_seconds: float = Field(1.0, ge=0.0, le=30.0)


class EmailSourceConfig(BaseModel):
    """Inbox polling settings for reports delivered as email attachments."""

    enabled: bool = Field(False, description="Poll the report inbox for attachments")
    mailbox: str = Field("INBOX", min_length=1)
    sender: str = Field("union.fit", min_length=1, description="Sender filter for report emails")
    poll_interval_seconds: int = Field(30, ge=1, le=600)
    poll_timeout_seconds: int = Field(600, ge=0, le=3600)


class SourcesConfig(BaseModel):
    """All external report sources."""

    union: UnionSourceConfig = Field(default_factory=UnionSourceConfig)
    shopify: ShopifySourceConfig = Field(default_factory=ShopifySourceConfig)
    email: EmailSourceConfig = Field(default_factory=EmailSourceConfig)


class WatermarkConfig(BaseModel):
    """Incremental fetch window settings."""

    backfill_start: date = Field(
        date(2024, 1, 1), description="Window start for categories never fetched before"
    )
    overlap_days: int = Field(
        1, ge=0, le=31, description="Days re-fetched before the high-water date"
    )
    stale_after_days: int = Field(
        7, ge=1, description="Widen the window when the last fetch is older than this"
    )
    stale_lookback_days: int = Field(
        30, ge=1, description="Days re-fetched before the high-water date when stale"
    )

    @model_validator(mode="after")
    def validate_lookback(self):
        if self.stale_lookback_days < self.overlap_days:
            raise ValueError("stale_lookback_days must be >= overlap_days")
        return self


class OrchestratorConfig(BaseModel):
    """Run lifecycle settings."""

    history_size: int = Field(10, ge=1, le=500, description="Terminal runs kept in memory")
    error_message_max_length: int = Field(200, ge=20, le=2000)
    disabled_categories: List[ReportCategory] = Field(
        default_factory=list, description="Categories reported as skipped"
    )
    stuck_after_minutes: int = Field(
        20, ge=0, description="Auto-reset runs older than this (0 disables the watchdog)"
    )
    progress_queue_size: int = Field(
        100, ge=2, le=10000, description="Buffered events per progress subscriber"
    )


class FreshnessConfig(BaseModel):
    """Staleness classification thresholds."""

    fresh_hours: float = Field(12, gt=0)
    aging_hours: float = Field(24, gt=0)
    recent_runs: int = Field(10, ge=1, le=100)

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.fresh_hours >= self.aging_hours:
            raise ValueError("fresh_hours must be less than aging_hours")
        return self


class ScheduleConfig(BaseModel):
    """Cron schedule for automatic runs."""

    enabled: bool = Field(False, description="Trigger runs on a cron schedule")
    cron: str = Field("0 6 * * *", description="Five-field crontab expression")
    timezone: str = Field("America/New_York", description="IANA timezone for the schedule")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_cron(self):
        try:
            CronTrigger.from_crontab(self.cron, timezone=ZoneInfo(self.timezone))
        except ValueError as e:
            raise ValueError(f"Invalid cron expression '{self.cron}': {e}") from e
        return self


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field("127.0.0.1", min_length=1)
    port: int = Field(8000, ge=1, le=65535)
    stream_timeout_seconds: int = Field(
        1800, ge=1, description="Close status streams after this long"
    )
    keepalive_seconds: float = Field(15, gt=0, le=300)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AdvancedConfig(BaseModel):
    """Advanced runtime settings."""

    http_request_timeout: int = Field(
        60, ge=5, le=600, description="Request timeout for source API calls (seconds)"
    )
    user_agent: str = Field("StudioPipeline/1.0", min_length=1)

    @field_validator("user_agent")
    @classmethod
    def strip_user_agent(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("user_agent cannot be empty")
        return stripped


class AppConfig(BaseModel):
    """Root configuration object for the studio ingestion pipeline."""

    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    watermarks: WatermarkConfig = Field(default_factory=WatermarkConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    freshness: FreshnessConfig = Field(default_factory=FreshnessConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    advanced: AdvancedConfig = Field(default_factory=AdvancedConfig)

    @model_validator(mode="after")
    def validate_sources(self):
        if not (self.sources.union.enabled or self.sources.shopify.enabled or self.sources.email.enabled):
            raise ValueError("At least one source (union, shopify, email) must be enabled")
        return self

    def enabled_categories(self) -> List[ReportCategory]:
        """Categories not disabled in config, in priority order."""
        disabled = set(self.orchestrator.disabled_categories)
        return [c for c in ReportCategory if c not in disabled]

    def is_category_enabled(self, category: ReportCategory) -> bool:
        return category not in set(self.orchestrator.disabled_categories)

    def union_report_slug(self, category: ReportCategory) -> Optional[str]:
        return self.sources.union.reports.get(category.value)
