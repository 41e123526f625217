"""Unit tests for domain models."""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from studio_pipeline.domain import (
    CATEGORY_ORDER,
    CategoryState,
    CategoryStatus,
    DeliveryMethod,
    ErrorKind,
    FetchWindow,
    InvalidTransitionError,
    PipelineRun,
    RawReport,
    ReportCategory,
    RunState,
    WatermarkEntry,
)

STARTED = datetime(2026, 2, 24, 12, 0, tzinfo=timezone.utc)


class TestReportCategory:
    """Tests for category ordering and metadata."""

    def test_priority_order(self):
        assert CATEGORY_ORDER[0] == ReportCategory.NEW_CUSTOMERS
        assert CATEGORY_ORDER[1] == ReportCategory.ORDERS
        assert CATEGORY_ORDER[-1] == ReportCategory.SHOPIFY_ORDERS
        assert len(CATEGORY_ORDER) == 11

    def test_labels(self):
        assert ReportCategory.ORDERS.label == "Orders"
        assert ReportCategory.FIRST_VISITS.label == "First Visits"

    def test_optional_categories(self):
        assert ReportCategory.SHOPIFY_ORDERS.optional
        assert ReportCategory.REVENUE_CATEGORIES.optional
        assert not ReportCategory.ORDERS.optional


class TestCategoryStatus:
    """Tests for monotonic category transitions."""

    def test_forward_progression(self):
        status = CategoryStatus(category=ReportCategory.ORDERS)

        status.advance(CategoryState.DOWNLOADING)
        status.advance(CategoryState.PARSING, delivery_method=DeliveryMethod.EMAIL)
        status.advance(CategoryState.SAVED, record_count=40)

        assert status.state == CategoryState.SAVED
        assert status.record_count == 40
        assert status.delivery_method == DeliveryMethod.EMAIL

    def test_pending_can_jump_to_terminal(self):
        status = CategoryStatus(category=ReportCategory.SHOPIFY_ORDERS)
        status.advance(CategoryState.SKIPPED)
        assert status.state == CategoryState.SKIPPED

    def test_reentering_current_state_fills_details(self):
        status = CategoryStatus(category=ReportCategory.ORDERS)
        status.advance(CategoryState.PARSING)
        status.advance(CategoryState.PARSING, delivery_method=DeliveryMethod.DIRECT)
        assert status.delivery_method == DeliveryMethod.DIRECT

    def test_regression_rejected(self):
        status = CategoryStatus(category=ReportCategory.ORDERS)
        status.advance(CategoryState.PARSING)

        with pytest.raises(InvalidTransitionError, match="regress"):
            status.advance(CategoryState.DOWNLOADING)

    @pytest.mark.parametrize("terminal", [CategoryState.SAVED, CategoryState.FAILED, CategoryState.SKIPPED])
    def test_terminal_states_are_final(self, terminal):
        status = CategoryStatus(category=ReportCategory.ORDERS)
        status.advance(terminal)

        with pytest.raises(InvalidTransitionError, match="terminal"):
            status.advance(CategoryState.FAILED)

    def test_to_dict_omits_unset_fields(self):
        status = CategoryStatus(category=ReportCategory.ORDERS)
        assert status.to_dict() == {"state": "pending"}

        status.advance(CategoryState.FAILED, error="HTTP 500")
        assert status.to_dict() == {"state": "failed", "error": "HTTP 500"}


class TestPipelineRun:
    """Tests for PipelineRun construction and serialization."""

    def test_new_run_has_pending_categories(self):
        run = PipelineRun.new("pipeline-1", STARTED, [ReportCategory.ORDERS, ReportCategory.FIRST_VISITS])

        assert run.state == RunState.QUEUED
        assert run.is_active
        assert list(run.categories) == [ReportCategory.ORDERS, ReportCategory.FIRST_VISITS]
        assert all(s.state == CategoryState.PENDING for s in run.categories.values())

    def test_snapshot_is_independent(self):
        run = PipelineRun.new("pipeline-1", STARTED, [ReportCategory.ORDERS])
        copy = run.snapshot()

        run.categories[ReportCategory.ORDERS].advance(CategoryState.DOWNLOADING)
        run.warnings.append("Orders: row 3 skipped")

        assert copy.categories[ReportCategory.ORDERS].state == CategoryState.PENDING
        assert copy.warnings == []

    def test_progress_payload(self):
        run = PipelineRun.new("pipeline-1", STARTED, [ReportCategory.ORDERS])
        run.step = "Downloading Orders"
        run.percent = 10

        payload = run.progress_payload()

        assert payload == {
            "step": "Downloading Orders",
            "percent": 10,
            "startedAt": 1771934400000,
            "categories": {"orders": {"state": "pending"}},
        }

    def test_to_dict_terminal_error(self):
        run = PipelineRun.new("pipeline-1", STARTED, [ReportCategory.ORDERS])
        run.state = RunState.ERROR
        run.error_message = "HTTP 401: session expired"
        run.error_kind = ErrorKind.AUTH_EXPIRED
        run.finished_at = datetime(2026, 2, 24, 12, 1, tzinfo=timezone.utc)
        run.duration_ms = 60000

        data = run.to_dict()

        assert data["id"] == "pipeline-1"
        assert data["state"] == "error"
        assert data["errorKind"] == "auth_expired"
        assert data["durationMs"] == 60000
        assert data["finishedAt"] == "2026-02-24T12:01:00.000000Z"
        assert not run.is_active

    def test_to_dict_running_has_no_finish(self):
        data = PipelineRun.new("pipeline-1", STARTED, []).to_dict()

        assert data["finishedAt"] is None
        assert data["errorKind"] is None
        assert data["recordCounts"] == {}


class TestWatermarkEntry:
    def test_to_dict(self):
        entry = WatermarkEntry(
            category=ReportCategory.ORDERS,
            last_fetched=datetime(2026, 2, 24, 6, 0, tzinfo=timezone.utc),
            high_water_date=date(2026, 2, 24),
            record_count=40,
        )

        assert entry.to_dict() == {
            "category": "orders",
            "label": "Orders",
            "lastFetched": "2026-02-24T06:00:00Z",
            "highWaterDate": "2026-02-24",
            "recordCount": 40,
            "notes": None,
        }

    def test_to_dict_never_fetched(self):
        data = WatermarkEntry(category=ReportCategory.ORDERS).to_dict()

        assert data["lastFetched"] is None
        assert data["highWaterDate"] is None


class TestFetchWindow:
    def test_single_day_window(self):
        window = FetchWindow(since=date(2026, 2, 24), until=date(2026, 2, 24))
        assert window.since == window.until

    def test_inverted_window_rejected(self):
        with pytest.raises(ValidationError, match="after window end"):
            FetchWindow(since=date(2026, 2, 25), until=date(2026, 2, 24))


class TestRawReport:
    def test_defaults(self):
        report = RawReport(content=b"a,b\n1,2\n")

        assert report.delivery_method == DeliveryMethod.DIRECT
        assert report.filename is None
        assert report.metadata == {}

    def test_frozen(self):
        report = RawReport(content=[])
        with pytest.raises(AttributeError):
            report.filename = "x.csv"
