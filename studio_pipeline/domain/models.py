"""Core domain models for pipeline runs, report categories and watermarks.

This module defines the data structures shared by every layer:
- ReportCategory: the fixed set of report types, in ingestion priority order
- CategoryStatus: per-category progress inside one run
- PipelineRun: one attempt at the full ingestion cycle
- WatermarkEntry / FetchWindow: incremental fetch state
- RawReport: what a source fetcher hands back before parsing
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field, model_validator

from studio_pipeline.utils.timestamps import format_timestamp, to_epoch_ms

from .exceptions import InvalidTransitionError


class ReportCategory(str, Enum):
    """Report types ingested by the pipeline.

    Declaration order is the processing priority: required, high-value
    reports first, optional sources last.
    """

    NEW_CUSTOMERS = "newCustomers"
    ORDERS = "orders"
    FIRST_VISITS = "firstVisits"
    FULL_REGISTRATIONS = "fullRegistrations"
    CANCELED_AUTO_RENEWS = "canceledAutoRenews"
    ACTIVE_AUTO_RENEWS = "activeAutoRenews"
    PAUSED_AUTO_RENEWS = "pausedAutoRenews"
    TRIALING_AUTO_RENEWS = "trialingAutoRenews"
    NEW_AUTO_RENEWS = "newAutoRenews"
    REVENUE_CATEGORIES = "revenueCategories"
    SHOPIFY_ORDERS = "shopifyOrders"

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self]

    @property
    def optional(self) -> bool:
        return self in OPTIONAL_CATEGORIES


CATEGORY_ORDER: List[ReportCategory] = list(ReportCategory)

CATEGORY_LABELS: Dict[ReportCategory, str] = {
    ReportCategory.NEW_CUSTOMERS: "New Customers",
    ReportCategory.ORDERS: "Orders",
    ReportCategory.FIRST_VISITS: "First Visits",
    ReportCategory.FULL_REGISTRATIONS: "Registrations",
    ReportCategory.CANCELED_AUTO_RENEWS: "Canceled Auto-Renews",
    ReportCategory.ACTIVE_AUTO_RENEWS: "Active Auto-Renews",
    ReportCategory.PAUSED_AUTO_RENEWS: "Paused Auto-Renews",
    ReportCategory.TRIALING_AUTO_RENEWS: "Trialing Auto-Renews",
    ReportCategory.NEW_AUTO_RENEWS: "New Auto-Renews",
    ReportCategory.REVENUE_CATEGORIES: "Revenue Categories",
    ReportCategory.SHOPIFY_ORDERS: "Shopify Orders",
}

OPTIONAL_CATEGORIES = frozenset({
    ReportCategory.REVENUE_CATEGORIES,
    ReportCategory.SHOPIFY_ORDERS,
})


class CategoryState(str, Enum):
    """Lifecycle of one category inside a run."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    SAVED = "saved"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (CategoryState.SAVED, CategoryState.FAILED, CategoryState.SKIPPED)

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    CategoryState.PENDING: 0,
    CategoryState.DOWNLOADING: 1,
    CategoryState.PARSING: 2,
    CategoryState.SAVED: 3,
    CategoryState.FAILED: 3,
    CategoryState.SKIPPED: 3,
}


class RunState(str, Enum):
    """Lifecycle of a pipeline run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETE, RunState.ERROR)


class DeliveryMethod(str, Enum):
    """How a report reached us."""

    DIRECT = "direct"
    EMAIL = "email"


class ErrorKind(str, Enum):
    """Coarse classification of run-level failures for the UI."""

    AUTH_EXPIRED = "auth_expired"
    GENERIC = "generic"


class CategoryStatus(BaseModel):
    """Status of one report category within a running PipelineRun."""

    category: ReportCategory
    state: CategoryState = CategoryState.PENDING
    record_count: Optional[int] = None
    error: Optional[str] = None
    delivery_method: Optional[DeliveryMethod] = None

    def advance(
        self,
        state: CategoryState,
        *,
        record_count: Optional[int] = None,
        error: Optional[str] = None,
        delivery_method: Optional[DeliveryMethod] = None,
    ) -> None:
        """Move to ``state``, rejecting any regression.

        Re-entering the current non-terminal state is allowed so details
        (e.g. delivery method) can be filled in. Terminal states are final.

        Raises:
            InvalidTransitionError: If the transition would move backwards or
                leave a terminal state
        """
        if self.state.terminal:
            raise InvalidTransitionError(
                f"{self.category.value}: cannot leave terminal state "
                f"'{self.state.value}' for '{state.value}'"
            )
        if state.rank < self.state.rank:
            raise InvalidTransitionError(
                f"{self.category.value}: cannot regress from "
                f"'{self.state.value}' to '{state.value}'"
            )

        self.state = state
        if record_count is not None:
            self.record_count = record_count
        if error is not None:
            self.error = error
        if delivery_method is not None:
            self.delivery_method = delivery_method

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"state": self.state.value}
        if self.record_count is not None:
            payload["recordCount"] = self.record_count
        if self.error is not None:
            payload["error"] = self.error
        if self.delivery_method is not None:
            payload["deliveryMethod"] = self.delivery_method.value
        return payload


class PipelineRun(BaseModel):
    """One attempt to execute the full ingestion cycle.

    Only the orchestrator mutates a run; everything else receives deep copies
    via ``snapshot()``.
    """

    id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    state: RunState = RunState.QUEUED
    duration_ms: Optional[int] = None
    record_counts: Dict[str, int] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    warnings: List[str] = Field(default_factory=list)
    categories: Dict[ReportCategory, CategoryStatus] = Field(default_factory=dict)
    step: str = "Queued"
    percent: int = 0

    @classmethod
    def new(cls, run_id: str, started_at: datetime, categories: Sequence[ReportCategory]) -> "PipelineRun":
        return cls(
            id=run_id,
            started_at=started_at,
            categories={c: CategoryStatus(category=c) for c in categories},
        )

    @property
    def is_active(self) -> bool:
        return not self.state.terminal

    def snapshot(self) -> "PipelineRun":
        return self.model_copy(deep=True)

    def progress_payload(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "percent": self.percent,
            "startedAt": to_epoch_ms(self.started_at),
            "categories": {c.value: s.to_dict() for c, s in self.categories.items()},
        }

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape the dashboard consumes."""
        progress = self.progress_payload()
        return {
            "id": self.id,
            "state": self.state.value,
            "step": progress["step"],
            "percent": progress["percent"],
            "startedAt": format_timestamp(self.started_at, include_microseconds=True),
            "startedAtMs": progress["startedAt"],
            "finishedAt": format_timestamp(self.finished_at, include_microseconds=True) or None,
            "durationMs": self.duration_ms,
            "recordCounts": dict(self.record_counts),
            "errorMessage": self.error_message,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "warnings": list(self.warnings),
            "categories": progress["categories"],
        }


class WatermarkEntry(BaseModel):
    """Durable incremental-fetch state for one report category."""

    category: ReportCategory
    last_fetched: Optional[datetime] = None
    high_water_date: Optional[date] = None
    record_count: int = 0
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "label": self.category.label,
            "lastFetched": format_timestamp(self.last_fetched) or None,
            "highWaterDate": self.high_water_date.isoformat() if self.high_water_date else None,
            "recordCount": self.record_count,
            "notes": self.notes,
        }


class FetchWindow(BaseModel):
    """Inclusive date window requested from a source fetcher."""

    since: date
    until: date

    @model_validator(mode="after")
    def check_order(self):
        if self.since > self.until:
            raise ValueError(f"Window start {self.since} is after window end {self.until}")
        return self


RawContent = Union[bytes, str, Sequence[Mapping[str, Any]]]


@dataclass(frozen=True)
class RawReport:
    """Unparsed output of a source fetcher.

    Attributes:
        content: CSV bytes/text, or already-tabular row mappings (JSON APIs)
        delivery_method: Whether the report came back directly or by email
        filename: Attachment or export name, when the source provides one
    """

    content: RawContent
    delivery_method: DeliveryMethod = DeliveryMethod.DIRECT
    filename: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
