"""Database schema definition and ORM models.

Run bookkeeping (pipeline_runs, watermarks) plus one business table per
report family. Timestamps are stored as ISO 8601 strings, business dates as
YYYY-MM-DD strings.
"""

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, Float, Index, Integer, String, Text, UniqueConstraint, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from studio_pipeline.domain.models import (
    CategoryState,
    CategoryStatus,
    DeliveryMethod,
    ErrorKind,
    FetchWindow,
    PipelineRun,
    ReportCategory,
    RunState,
    WatermarkEntry,
)
from studio_pipeline.parsing.schemas import ReportRow
from studio_pipeline.utils.timestamps import format_timestamp, parse_iso_datetime

logger = logging.getLogger(__name__)

Base = declarative_base()


class PipelineRunModel(Base):
    """ORM model for pipeline_runs; one row per run, rewritten on each transition."""

    __tablename__ = "pipeline_runs"

    id = Column(String(64), primary_key=True, nullable=False)
    state = Column(String(20), nullable=False)
    started_at = Column(String(50), nullable=False)
    finished_at = Column(String(50), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    record_counts = Column(Text, nullable=False, default="{}")
    error_message = Column(Text, nullable=True)
    error_kind = Column(String(20), nullable=True)
    warnings = Column(Text, nullable=False, default="[]")
    categories = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("idx_pipeline_runs_started", "started_at"),
        Index("idx_pipeline_runs_state", "state"),
    )

    def to_domain(self) -> PipelineRun:
        categories = {}
        for name, payload in json.loads(self.categories or "{}").items():
            category = ReportCategory(name)
            categories[category] = CategoryStatus(
                category=category,
                state=CategoryState(payload["state"]),
                record_count=payload.get("recordCount"),
                error=payload.get("error"),
                delivery_method=(
                    DeliveryMethod(payload["deliveryMethod"]) if payload.get("deliveryMethod") else None
                ),
            )

        return PipelineRun(
            id=self.id,
            state=RunState(self.state),
            started_at=_parse_datetime(self.started_at),
            finished_at=_parse_datetime(self.finished_at),
            duration_ms=self.duration_ms,
            record_counts=json.loads(self.record_counts or "{}"),
            error_message=self.error_message,
            error_kind=ErrorKind(self.error_kind) if self.error_kind else None,
            warnings=json.loads(self.warnings or "[]"),
            categories=categories,
            step="Complete" if self.state == RunState.COMPLETE.value else self.state.capitalize(),
            percent=100 if self.state == RunState.COMPLETE.value else 0,
        )

    def apply(self, run: PipelineRun) -> None:
        """Copy a domain run onto this row."""
        self.state = run.state.value
        self.started_at = _format_datetime(run.started_at)
        self.finished_at = _format_datetime(run.finished_at)
        self.duration_ms = run.duration_ms
        self.record_counts = json.dumps(run.record_counts, sort_keys=True)
        self.error_message = run.error_message
        self.error_kind = run.error_kind.value if run.error_kind else None
        self.warnings = json.dumps(run.warnings)
        self.categories = json.dumps(
            {c.value: s.to_dict() for c, s in run.categories.items()}, sort_keys=True
        )

    @classmethod
    def from_domain(cls, run: PipelineRun) -> "PipelineRunModel":
        model = cls(id=run.id)
        model.apply(run)
        return model


class WatermarkModel(Base):
    """ORM model for watermarks; one row per report category."""

    __tablename__ = "watermarks"

    category = Column(String(50), primary_key=True, nullable=False)
    last_fetched_at = Column(String(50), nullable=True)
    high_water_date = Column(String(10), nullable=True)
    record_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    def to_domain(self) -> WatermarkEntry:
        return WatermarkEntry(
            category=ReportCategory(self.category),
            last_fetched=_parse_datetime(self.last_fetched_at),
            high_water_date=_parse_date(self.high_water_date),
            record_count=self.record_count or 0,
            notes=self.notes,
        )

    @classmethod
    def from_domain(cls, entry: WatermarkEntry) -> "WatermarkModel":
        return cls(
            category=entry.category.value,
            last_fetched_at=_format_datetime(entry.last_fetched),
            high_water_date=_format_date(entry.high_water_date),
            record_count=entry.record_count,
            notes=entry.notes,
        )


class RecordMixin:
    """Columns and upsert metadata shared by the business tables.

    Subclasses declare:
        natural_key: Column names forming the upsert key
        write_once: Columns only filled when currently empty
        dated_by_window: Rows carry no event date; the window end stands in
    """

    natural_key = ()
    write_once = frozenset()
    dated_by_window = False

    first_seen_run_id = Column(String(64), nullable=True)
    last_seen_run_id = Column(String(64), nullable=True)
    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)

    @classmethod
    def values_from_row(cls, row: ReportRow, category: ReportCategory, window: FetchWindow) -> Dict[str, Any]:
        raise NotImplementedError


class CustomerModel(RecordMixin, Base):
    __tablename__ = "customers"

    natural_key = ("email",)

    email = Column(String(255), primary_key=True, nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(100), nullable=True)
    orders = Column(Integer, nullable=True)
    created = Column(String(10), nullable=True)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "email": row.email,
            "name": row.name,
            "role": row.role,
            "orders": row.orders,
            "created": _format_date(row.created),
        }


class OrderModel(RecordMixin, Base):
    __tablename__ = "orders"

    natural_key = ("code",)
    write_once = frozenset({"email", "customer"})

    code = Column(String(100), primary_key=True, nullable=False)
    created = Column(String(10), nullable=True)
    customer = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    type = Column(String(100), nullable=True)
    payment = Column(String(100), nullable=True)
    total = Column(Float, nullable=True)

    __table_args__ = (Index("idx_orders_created", "created"),)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "code": row.code,
            "created": _format_date(row.created),
            "customer": row.customer,
            "email": row.email.lower(),
            "type": row.type,
            "payment": row.payment,
            "total": row.total,
        }


class FirstVisitModel(RecordMixin, Base):
    __tablename__ = "first_visits"

    natural_key = ("record_key",)

    record_key = Column(String(64), primary_key=True, nullable=False)
    attendee = Column(String(255), nullable=False)
    performance = Column(String(255), nullable=True)
    type = Column(String(100), nullable=True)
    redeemed_at = Column(String(10), nullable=True)
    pass_name = Column(String(255), nullable=True)
    status = Column(String(100), nullable=True)

    __table_args__ = (Index("idx_first_visits_redeemed", "redeemed_at"),)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "record_key": row.natural_key(category),
            "attendee": row.attendee,
            "performance": row.performance,
            "type": row.type,
            "redeemed_at": _format_date(row.redeemed_at),
            "pass_name": row.pass_name,
            "status": row.status,
        }


class RegistrationModel(RecordMixin, Base):
    __tablename__ = "registrations"

    natural_key = ("record_key",)
    write_once = frozenset({"email"})

    record_key = Column(String(64), primary_key=True, nullable=False)
    event_name = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=True)
    teacher_name = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    attended_at = Column(String(10), nullable=True)
    registration_type = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    pass_name = Column(String(255), nullable=True)
    subscription = Column(String(255), nullable=True)
    revenue = Column(Float, nullable=True)

    __table_args__ = (Index("idx_registrations_attended", "attended_at"),)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "record_key": row.natural_key(category),
            "event_name": row.event_name,
            "location_name": row.location_name,
            "teacher_name": row.teacher_name,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "email": row.email.lower(),
            "attended_at": _format_date(row.attended_at),
            "registration_type": row.registration_type,
            "state": row.state,
            "pass_name": row.pass_name,
            "subscription": row.subscription,
            "revenue": row.revenue,
        }


class AutoRenewModel(RecordMixin, Base):
    """Auto-renew subscriptions; one table for all subscription report lists."""

    __tablename__ = "auto_renews"

    natural_key = ("record_key",)
    write_once = frozenset({"email"})

    record_key = Column(String(64), primary_key=True, nullable=False)
    category = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    state = Column(String(50), nullable=True)
    price = Column(Float, nullable=True)
    customer = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    canceled_at = Column(String(10), nullable=True)
    created = Column(String(10), nullable=True)

    __table_args__ = (Index("idx_auto_renews_category", "category"),)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "record_key": row.natural_key(category),
            "category": category.value,
            "name": row.name,
            "state": row.state,
            "price": row.price,
            "customer": row.customer,
            "email": row.email.lower(),
            "canceled_at": _format_date(row.canceled_at),
            "created": _format_date(row.created),
        }


class RevenueCategoryModel(RecordMixin, Base):
    """Revenue summary per category for one reporting period (the fetch window)."""

    __tablename__ = "revenue_categories"

    natural_key = ("period_start", "period_end", "category")
    dated_by_window = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    period_start = Column(String(10), nullable=False)
    period_end = Column(String(10), nullable=False)
    category = Column(String(255), nullable=False)
    revenue = Column(Float, nullable=True)
    union_fees = Column(Float, nullable=True)
    stripe_fees = Column(Float, nullable=True)
    other_fees = Column(Float, nullable=True)
    transfers = Column(Float, nullable=True)
    refunded = Column(Float, nullable=True)
    union_fees_refunded = Column(Float, nullable=True)
    net_revenue = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("period_start", "period_end", "category", name="uq_revenue_period_category"),
    )

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "period_start": _format_date(window.since),
            "period_end": _format_date(window.until),
            "category": row.revenue_category,
            "revenue": row.revenue,
            "union_fees": row.union_fees,
            "stripe_fees": row.stripe_fees,
            "other_fees": row.other_fees,
            "transfers": row.transfers,
            "refunded": row.refunded,
            "union_fees_refunded": row.union_fees_refunded,
            "net_revenue": row.net_revenue,
        }


class ShopifyOrderModel(RecordMixin, Base):
    __tablename__ = "shopify_orders"

    natural_key = ("id",)
    write_once = frozenset({"email"})

    id = Column(String(64), primary_key=True, nullable=False)
    name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    created = Column(String(10), nullable=True)
    financial_status = Column(String(50), nullable=True)
    fulfillment_status = Column(String(50), nullable=True)
    total_price = Column(Float, nullable=True)
    currency = Column(String(10), nullable=True)
    line_item_count = Column(Integer, nullable=True)

    @classmethod
    def values_from_row(cls, row, category, window):
        return {
            "id": row.id,
            "name": row.name,
            "email": row.email.lower(),
            "created": _format_date(row.created),
            "financial_status": row.financial_status,
            "fulfillment_status": row.fulfillment_status,
            "total_price": row.total_price,
            "currency": row.currency,
            "line_item_count": row.line_item_count,
        }


MODEL_FOR_CATEGORY = {
    ReportCategory.NEW_CUSTOMERS: CustomerModel,
    ReportCategory.ORDERS: OrderModel,
    ReportCategory.FIRST_VISITS: FirstVisitModel,
    ReportCategory.FULL_REGISTRATIONS: RegistrationModel,
    ReportCategory.CANCELED_AUTO_RENEWS: AutoRenewModel,
    ReportCategory.ACTIVE_AUTO_RENEWS: AutoRenewModel,
    ReportCategory.PAUSED_AUTO_RENEWS: AutoRenewModel,
    ReportCategory.TRIALING_AUTO_RENEWS: AutoRenewModel,
    ReportCategory.NEW_AUTO_RENEWS: AutoRenewModel,
    ReportCategory.REVENUE_CATEGORIES: RevenueCategoryModel,
    ReportCategory.SHOPIFY_ORDERS: ShopifyOrderModel,
}

BUSINESS_MODELS = (
    CustomerModel,
    OrderModel,
    FirstVisitModel,
    RegistrationModel,
    AutoRenewModel,
    RevenueCategoryModel,
    ShopifyOrderModel,
)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO 8601 UTC string for storage."""
    if dt is None:
        return None
    return format_timestamp(dt, include_microseconds=True)


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string back to a UTC datetime."""
    if not dt_str:
        return None
    return parse_iso_datetime(dt_str)


def _format_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _parse_date(d_str: Optional[str]) -> Optional[date]:
    return date.fromisoformat(d_str) if d_str else None


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent)."""
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(tables)}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
