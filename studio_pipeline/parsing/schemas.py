"""Typed row schemas for each report category.

Column names arrive normalized to camelCase (see parser.normalize_header) and
map onto snake_case fields through a camelCase alias generator. Empty cells
are dropped before validation so field defaults apply; numeric fields default
to None so a missing amount is never stored as zero.
"""

import re
from datetime import date
from typing import ClassVar, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from studio_pipeline.domain.models import ReportCategory
from studio_pipeline.utils.hashing import compute_record_key


class ReportRow(BaseModel):
    """Base class for parsed report rows.

    Class attributes describe how the parser treats the columns:
        required_columns: Normalized headers that must be present in the file
        money_fields: Fields parsed as currency ($ and , stripped)
        date_fields: Fields parsed as business dates
        event_date_field: Date field that drives the category watermark
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )

    required_columns: ClassVar[Tuple[str, ...]] = ()
    money_fields: ClassVar[Tuple[str, ...]] = ()
    date_fields: ClassVar[Tuple[str, ...]] = ()
    event_date_field: ClassVar[Optional[str]] = None

    def event_date(self) -> Optional[date]:
        if self.event_date_field is None:
            return None
        return getattr(self, self.event_date_field)

    def natural_key(self, category: ReportCategory) -> str:
        raise NotImplementedError


class NewCustomerRow(ReportRow):
    required_columns = ("email",)
    date_fields = ("created",)
    event_date_field = "created"

    name: str = ""
    email: str
    role: str = ""
    orders: Optional[int] = None
    created: Optional[date] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if not v:
            raise ValueError("email cannot be empty")
        return v.lower()

    def natural_key(self, category: ReportCategory) -> str:
        return self.email


class OrderRow(ReportRow):
    required_columns = ("code",)
    money_fields = ("total",)
    date_fields = ("created",)
    event_date_field = "created"

    code: str = Field(..., min_length=1)
    created: Optional[date] = None
    customer: str = ""
    email: str = ""
    type: str = ""
    payment: str = ""
    total: Optional[float] = None

    def natural_key(self, category: ReportCategory) -> str:
        return self.code


class FirstVisitRow(ReportRow):
    required_columns = ("attendee", "redeemedAt")
    date_fields = ("redeemed_at",)
    event_date_field = "redeemed_at"

    attendee: str = Field(..., min_length=1)
    performance: str = ""
    type: str = ""
    redeemed_at: Optional[date] = None
    pass_name: str = Field("", alias="pass")
    status: str = ""

    def natural_key(self, category: ReportCategory) -> str:
        return compute_record_key(
            category.value,
            self.attendee,
            self.performance,
            self.redeemed_at.isoformat() if self.redeemed_at else None,
        )


class RegistrationRow(ReportRow):
    required_columns = ("eventName", "attendedAt")
    money_fields = ("revenue",)
    date_fields = ("attended_at",)
    event_date_field = "attended_at"

    event_name: str = Field(..., min_length=1)
    location_name: str = ""
    teacher_name: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    attended_at: Optional[date] = None
    registration_type: str = ""
    state: str = ""
    pass_name: str = Field("", alias="pass")
    subscription: str = ""
    revenue: Optional[float] = None

    def natural_key(self, category: ReportCategory) -> str:
        attendee = self.email.lower() or f"{self.first_name} {self.last_name}"
        return compute_record_key(
            category.value,
            attendee,
            self.event_name,
            self.attended_at.isoformat() if self.attended_at else None,
        )


_PLAN_SUFFIX = re.compile(r"\n\s*(Subscription|Register)\b", re.IGNORECASE)


class AutoRenewRow(ReportRow):
    required_columns = ("name",)
    money_fields = ("price",)
    date_fields = ("created", "canceled_at")
    event_date_field = "created"

    name: str = Field(..., min_length=1)
    state: str = ""
    price: Optional[float] = None
    customer: str = ""
    email: str = ""
    canceled_at: Optional[date] = None
    created: Optional[date] = None

    @field_validator("name", mode="before")
    @classmethod
    def clean_plan_name(cls, v):
        # Exports append a "Subscription"/"Register" button label on its own line
        if isinstance(v, str):
            return re.sub(r"\s+", " ", _PLAN_SUFFIX.sub("", v)).strip()
        return v

    def event_date(self) -> Optional[date]:
        dates = [d for d in (self.created, self.canceled_at) if d is not None]
        return max(dates) if dates else None

    def natural_key(self, category: ReportCategory) -> str:
        return compute_record_key(
            category.value,
            self.email.lower() or self.customer,
            self.name,
            self.created.isoformat() if self.created else None,
        )


class RevenueCategoryRow(ReportRow):
    """Revenue summary for the fetch window; keyed by window, not by row date."""

    required_columns = ("revenueCategory",)
    money_fields = (
        "revenue", "union_fees", "stripe_fees", "other_fees", "transfers",
        "refunded", "union_fees_refunded", "net_revenue",
    )

    revenue_category: str = Field(..., min_length=1)
    revenue: Optional[float] = None
    union_fees: Optional[float] = None
    stripe_fees: Optional[float] = None
    other_fees: Optional[float] = None
    transfers: Optional[float] = None
    refunded: Optional[float] = None
    union_fees_refunded: Optional[float] = None
    net_revenue: Optional[float] = None

    def natural_key(self, category: ReportCategory) -> str:
        return self.revenue_category


class ShopifyOrderRow(ReportRow):
    required_columns = ("id",)
    money_fields = ("total_price",)
    date_fields = ("created",)
    event_date_field = "created"

    id: str = Field(..., min_length=1)
    name: str = ""
    email: str = ""
    created: Optional[date] = None
    financial_status: str = ""
    fulfillment_status: str = ""
    total_price: Optional[float] = None
    currency: str = ""
    line_item_count: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v

    def natural_key(self, category: ReportCategory) -> str:
        return self.id


SCHEMAS: Dict[ReportCategory, Type[ReportRow]] = {
    ReportCategory.NEW_CUSTOMERS: NewCustomerRow,
    ReportCategory.ORDERS: OrderRow,
    ReportCategory.FIRST_VISITS: FirstVisitRow,
    ReportCategory.FULL_REGISTRATIONS: RegistrationRow,
    ReportCategory.CANCELED_AUTO_RENEWS: AutoRenewRow,
    ReportCategory.ACTIVE_AUTO_RENEWS: AutoRenewRow,
    ReportCategory.PAUSED_AUTO_RENEWS: AutoRenewRow,
    ReportCategory.TRIALING_AUTO_RENEWS: AutoRenewRow,
    ReportCategory.NEW_AUTO_RENEWS: AutoRenewRow,
    ReportCategory.REVENUE_CATEGORIES: RevenueCategoryRow,
    ReportCategory.SHOPIFY_ORDERS: ShopifyOrderRow,
}


def schema_for(category: ReportCategory) -> Type[ReportRow]:
    return SCHEMAS[category]
