"""Unit tests for source fetchers."""

import imaplib
import io
import json
import zipfile
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from unittest.mock import Mock, patch

import pytest
import requests

from studio_pipeline.config.environment import EnvironmentConfig
from studio_pipeline.config.models import AppConfig
from studio_pipeline.domain.models import DeliveryMethod, FetchWindow, RawReport, ReportCategory
from studio_pipeline.fetchers import (
    AuthExpiredError,
    EmailAttachmentFetcher,
    FetcherConfigurationError,
    FetcherRegistry,
    FetchError,
    FetchHTTPError,
    FetchResponseError,
    FetchTimeoutError,
    ShopifyOrderFetcher,
    UnionReportFetcher,
    build_fetchers,
    classify_report,
)
from studio_pipeline.fetchers.shopify import _call_limit_usage

WINDOW = FetchWindow(since=date(2026, 2, 20), until=date(2026, 2, 24))
NOW = datetime(2026, 2, 24, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Helpers
# ============================================================================


def make_response(status=200, json_body=None, content=b"", headers=None, url="https://example.com"):
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = {200: "OK", 202: "Accepted", 401: "Unauthorized", 500: "Internal Server Error"}.get(status, "")
    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
        response.headers["Content-Type"] = "application/json; charset=utf-8"
    else:
        response._content = content
    response.headers.update(headers or {})
    return response


def report_email(subject, filename, payload, sent, subtype="octet-stream"):
    message = EmailMessage()
    message["From"] = "reports@union.fit"
    message["To"] = "studio@example.com"
    message["Subject"] = subject
    message["Date"] = format_datetime(sent)
    message.set_content("Your report is attached.")
    message.add_attachment(payload, maintype="application", subtype=subtype, filename=filename)
    return message.as_bytes()


def zip_bytes(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


class FakeIMAP:
    """In-memory stand-in for imaplib.IMAP4_SSL; message ids are 1-based positions."""

    def __init__(self, messages=None):
        self.messages = list(messages or [])
        self.searches = []
        self.connections = 0

    def __call__(self, host, port):
        self.connections += 1
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def login(self, user, password):
        return "OK", [b"Logged in"]

    def select(self, mailbox, readonly=False):
        return "OK", [str(len(self.messages)).encode()]

    def search(self, charset, criteria):
        self.searches.append(criteria)
        ids = b" ".join(str(i + 1).encode() for i in range(len(self.messages)))
        return "OK", [ids]

    def fetch(self, message_id, parts):
        raw = self.messages[int(message_id) - 1]
        return "OK", [(message_id + b" (RFC822 {%d}" % len(raw), raw), b")"]


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def email_fetcher(imap, clock=None, **kwargs):
    clock = clock or FakeClock()
    return EmailAttachmentFetcher(
        host="imap.example.com",
        user="reports@example.com",
        password="secret",
        imap_factory=imap,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
        **kwargs,
    )


# ============================================================================
# BaseFetcher HTTP handling (exercised through the Union.fit fetcher)
# ============================================================================


@pytest.fixture
def union():
    fetcher = UnionReportFetcher(api_token="tok", clock=lambda: NOW)
    yield fetcher
    fetcher.close()


class TestBaseFetcherRequests:
    """Error mapping shared by every HTTP fetcher."""

    def test_invalid_timeout(self):
        with pytest.raises(FetcherConfigurationError, match="Timeout"):
            UnionReportFetcher(api_token="tok", timeout=2)

    def test_empty_user_agent(self):
        with pytest.raises(FetcherConfigurationError, match="user_agent"):
            UnionReportFetcher(api_token="tok", user_agent="  ")

    def test_headers(self, union):
        assert union._session.headers["Authorization"] == "Bearer tok"
        assert union._session.headers["User-Agent"] == "StudioPipeline/1.0"

    def test_unauthorized_raises_auth_expired(self, union):
        with patch.object(union._session, "request", return_value=make_response(401)):
            with pytest.raises(AuthExpiredError) as exc_info:
                union.fetch(ReportCategory.ORDERS, WINDOW)

        assert exc_info.value.status_code == 401
        assert str(exc_info.value) == "HTTP 401: union session expired or unauthorized"

    def test_server_error(self, union):
        with patch.object(union._session, "request", return_value=make_response(500)):
            with pytest.raises(FetchHTTPError) as exc_info:
                union.fetch(ReportCategory.ORDERS, WINDOW)

        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, AuthExpiredError)

    def test_timeout(self, union):
        with patch.object(union._session, "request", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(FetchTimeoutError, match="timed out after 60 seconds"):
                union.fetch(ReportCategory.ORDERS, WINDOW)

    def test_connection_error(self, union):
        error = requests.exceptions.ConnectionError("refused")
        with patch.object(union._session, "request", side_effect=error):
            with pytest.raises(FetchHTTPError) as exc_info:
                union.fetch(ReportCategory.ORDERS, WINDOW)

        assert exc_info.value.status_code == 0

    def test_invalid_json(self, union):
        response = make_response(content=b"{not json", headers={"Content-Type": "application/json"})
        with patch.object(union._session, "request", return_value=response):
            with pytest.raises(FetchResponseError, match="Failed to parse JSON"):
                union.fetch(ReportCategory.ORDERS, WINDOW)


# ============================================================================
# Union.fit
# ============================================================================


class TestUnionReportFetcher:
    def test_missing_token(self):
        with pytest.raises(FetcherConfigurationError, match="UNION_API_TOKEN"):
            UnionReportFetcher(api_token=None)

    def test_categories_follow_report_map(self):
        fetcher = UnionReportFetcher(api_token="tok", reports={"orders": "transactions/orders"})

        assert fetcher.categories == frozenset({ReportCategory.ORDERS})
        with pytest.raises(FetcherConfigurationError):
            fetcher.fetch(ReportCategory.FIRST_VISITS, WINDOW)

    def test_csv_report(self, union):
        response = make_response(
            content=b"Code,Total\nA1,10\n",
            headers={"Content-Type": "text/csv", "Content-Disposition": 'attachment; filename="orders_2026-02-24.csv"'},
        )
        with patch.object(union._session, "request", return_value=response) as mock_request:
            report = union.fetch(ReportCategory.ORDERS, WINDOW)

        assert report.content == b"Code,Total\nA1,10\n"
        assert report.filename == "orders_2026-02-24.csv"
        assert report.delivery_method == DeliveryMethod.DIRECT
        kwargs = mock_request.call_args.kwargs
        assert kwargs["url"] == "https://www.union.fit/api/v1/reports/transactions/orders"
        assert kwargs["params"] == {"start_date": "2026-02-20", "end_date": "2026-02-24"}
        assert kwargs["timeout"] == 60

    def test_csv_without_disposition_gets_default_name(self, union):
        response = make_response(content=b"Email\na@b.com\n", headers={"Content-Type": "text/csv"})
        with patch.object(union._session, "request", return_value=response):
            report = union.fetch(ReportCategory.NEW_CUSTOMERS, WINDOW)

        assert report.filename == "newCustomers.csv"

    @pytest.mark.parametrize("body", [[{"code": "A1"}], {"data": [{"code": "A1"}]}])
    def test_json_rows(self, union, body):
        with patch.object(union._session, "request", return_value=make_response(json_body=body)):
            report = union.fetch(ReportCategory.ORDERS, WINDOW)

        assert report.content == [{"code": "A1"}]
        assert report.metadata["rows"] == 1

    def test_json_without_rows(self, union):
        with patch.object(union._session, "request", return_value=make_response(json_body={"data": "nope"})):
            with pytest.raises(FetchResponseError, match="Expected a list"):
                union.fetch(ReportCategory.ORDERS, WINDOW)

    @pytest.mark.parametrize(
        "response",
        [make_response(202, content=b""), make_response(json_body={"status": "queued"})],
    )
    def test_queued_export_waits_for_email(self, response):
        emailed = RawReport(content=b"Code\nA1\n", delivery_method=DeliveryMethod.EMAIL, filename="orders.csv")
        inbox = Mock()
        inbox.wait_for_report.return_value = emailed
        fetcher = UnionReportFetcher(api_token="tok", email_fetcher=inbox, clock=lambda: NOW)

        with patch.object(fetcher._session, "request", return_value=response):
            report = fetcher.fetch(ReportCategory.ORDERS, WINDOW)

        assert report is emailed
        inbox.wait_for_report.assert_called_once_with(ReportCategory.ORDERS, NOW)

    def test_queued_export_without_inbox_fails(self, union):
        with patch.object(union._session, "request", return_value=make_response(202)):
            with pytest.raises(FetchError, match="no report inbox is configured"):
                union.fetch(ReportCategory.ORDERS, WINDOW)

    def test_queued_export_inbox_checks_category(self):
        inbox = email_fetcher(FakeIMAP())
        fetcher = UnionReportFetcher(
            api_token="tok",
            reports={"orders": "transactions/orders", "shopifyOrders": "shopify/orders"},
            email_fetcher=inbox,
            clock=lambda: NOW,
        )

        assert inbox.supports(ReportCategory.ORDERS)
        with patch.object(fetcher._session, "request", return_value=make_response(202)):
            with pytest.raises(FetchError, match="does not recognize"):
                fetcher.fetch(ReportCategory.SHOPIFY_ORDERS, WINDOW)


# ============================================================================
# Shopify
# ============================================================================


def shopify_order(order_id, created="2026-02-24T09:00:00-05:00", items=2):
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "email": "Ada@Example.com",
        "created_at": created,
        "financial_status": "paid",
        "fulfillment_status": None,
        "total_price": "42.00",
        "currency": "USD",
        "line_items": [{}] * items,
    }


class TestShopifyOrderFetcher:
    def make_fetcher(self, sleep):
        return ShopifyOrderFetcher(
            store_domain="https://studio.myshopify.com/",
            access_token="shpat_test",
            page_size=2,
            sleep=sleep,
        )

    def test_missing_credentials(self):
        with pytest.raises(FetcherConfigurationError):
            ShopifyOrderFetcher(store_domain="studio.myshopify.com", access_token=None)

    def test_orders_url_and_token(self):
        fetcher = self.make_fetcher(Mock())

        assert fetcher.orders_url == "https://studio.myshopify.com/admin/api/2024-01/orders.json"
        assert fetcher._session.headers["X-Shopify-Access-Token"] == "shpat_test"
        assert fetcher.categories == frozenset({ReportCategory.SHOPIFY_ORDERS})

    def test_paginates_and_flattens(self):
        sleep = Mock()
        fetcher = self.make_fetcher(sleep)
        next_url = "https://studio.myshopify.com/admin/api/2024-01/orders.json?limit=2&page_info=abc"
        first = make_response(
            json_body={"orders": [shopify_order(1), shopify_order(2)]},
            headers={"Link": f'<{next_url}>; rel="next"', "X-Shopify-Shop-Api-Call-Limit": "39/40"},
        )
        second = make_response(json_body={"orders": [shopify_order(3, items=0)]})

        with patch.object(fetcher._session, "request", side_effect=[first, second]) as mock_request:
            report = fetcher.fetch(ReportCategory.SHOPIFY_ORDERS, WINDOW)

        assert [row["id"] for row in report.content] == [1, 2, 3]
        assert report.metadata == {"pages": 2}
        assert report.content[0]["created"] == "2026-02-24T09:00:00-05:00"
        assert report.content[0]["totalPrice"] == "42.00"
        assert report.content[2]["lineItemCount"] == 0

        first_call, second_call = mock_request.call_args_list
        assert first_call.kwargs["params"] == {
            "status": "any",
            "limit": 2,
            "created_at_min": "2026-02-20T00:00:00Z",
            "created_at_max": "2026-02-24T23:59:59Z",
        }
        assert second_call.kwargs["url"] == next_url
        assert second_call.kwargs["params"] is None
        sleep.assert_called_once_with(1.0)

    def test_no_throttle_below_threshold(self):
        sleep = Mock()
        fetcher = self.make_fetcher(sleep)
        next_url = "https://studio.myshopify.com/admin/api/2024-01/orders.json?page_info=abc"
        first = make_response(
            json_body={"orders": [shopify_order(1)]},
            headers={"Link": f'<{next_url}>; rel="next"', "X-Shopify-Shop-Api-Call-Limit": "10/40"},
        )
        second = make_response(json_body={"orders": []})

        with patch.object(fetcher._session, "request", side_effect=[first, second]):
            fetcher.fetch(ReportCategory.SHOPIFY_ORDERS, WINDOW)

        sleep.assert_not_called()

    def test_missing_orders_array(self):
        fetcher = self.make_fetcher(Mock())
        with patch.object(fetcher._session, "request", return_value=make_response(json_body={"errors": "x"})):
            with pytest.raises(FetchResponseError, match="orders"):
                fetcher.fetch(ReportCategory.SHOPIFY_ORDERS, WINDOW)

    @pytest.mark.parametrize(
        "header,expected",
        [("32/40", 0.8), ("0/40", 0.0), (None, None), ("garbage", None), ("1/0", None)],
    )
    def test_call_limit_usage(self, header, expected):
        assert _call_limit_usage(header) == expected


# ============================================================================
# Email attachments
# ============================================================================


class TestClassifyReport:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("first_visits_2026-02-24.csv", ReportCategory.FIRST_VISITS),
            ("New Customers export", ReportCategory.NEW_CUSTOMERS),
            ("orders.csv", ReportCategory.ORDERS),
            ("Canceled Auto-Renews.csv", ReportCategory.CANCELED_AUTO_RENEWS),
            ("New Auto-Renews.csv", ReportCategory.NEW_AUTO_RENEWS),
            ("active_subscriptions.csv", ReportCategory.ACTIVE_AUTO_RENEWS),
            ("Paused Auto-Renews", ReportCategory.PAUSED_AUTO_RENEWS),
            ("Trialing Auto-Renews", ReportCategory.TRIALING_AUTO_RENEWS),
            ("Full Registrations", ReportCategory.FULL_REGISTRATIONS),
            ("Revenue Categories.csv", ReportCategory.REVENUE_CATEGORIES),
            ("export.csv", None),
            (None, None),
        ],
    )
    def test_classification(self, text, expected):
        assert classify_report(text) is expected


class TestEmailAttachmentFetcher:
    def test_missing_credentials(self):
        with pytest.raises(FetcherConfigurationError, match="REPORT_INBOX"):
            EmailAttachmentFetcher(host="imap.example.com", user=None, password=None)

    def test_fetch_newest_matching_csv(self):
        imap = FakeIMAP(
            [
                report_email("Your report", "orders.csv", b"Code\nOLD\n", NOW - timedelta(days=1)),
                report_email("Your report", "first_visits.csv", b"Attendee\nAda\n", NOW),
                report_email("Your report", "orders.csv", b"Code\nNEW\n", NOW),
            ]
        )

        report = email_fetcher(imap).fetch(ReportCategory.ORDERS, WINDOW)

        assert report.content == b"Code\nNEW\n"
        assert report.filename == "orders.csv"
        assert report.delivery_method == DeliveryMethod.EMAIL
        assert imap.searches == ['(FROM "union.fit" SINCE 20-Feb-2026)']

    def test_subject_classifies_generic_attachment(self):
        imap = FakeIMAP([report_email("First Visits report ready", "export.csv", b"Attendee\nAda\n", NOW)])

        report = email_fetcher(imap).fetch(ReportCategory.FIRST_VISITS, WINDOW)

        assert report.content == b"Attendee\nAda\n"

    def test_zip_member_for_category_is_chosen(self):
        archive = zip_bytes({"orders.csv": b"Code\nA1\n", "first_visits.csv": b"Attendee\nAda\n", "readme.txt": b"hi"})
        imap = FakeIMAP([report_email("Reports", "reports.zip", archive, NOW, subtype="zip")])

        report = email_fetcher(imap).fetch(ReportCategory.FIRST_VISITS, WINDOW)

        assert report.filename == "first_visits.csv"
        assert report.content == b"Attendee\nAda\n"

    def test_corrupt_zip_is_skipped(self):
        imap = FakeIMAP([report_email("Orders", "orders.zip", b"not a zip", NOW, subtype="zip")])

        with pytest.raises(FetchError, match="No emailed Orders report"):
            email_fetcher(imap).fetch(ReportCategory.ORDERS, WINDOW)

    def test_non_csv_attachment_ignored(self):
        imap = FakeIMAP([report_email("Orders", "orders.pdf", b"%PDF", NOW)])

        with pytest.raises(FetchError, match="No emailed Orders report since 2026-02-20"):
            email_fetcher(imap).fetch(ReportCategory.ORDERS, WINDOW)

    def test_imap_failure_becomes_fetch_error(self):
        def broken(host, port):
            raise imaplib.IMAP4.error("LOGIN failed")

        fetcher = email_fetcher(broken)

        with pytest.raises(FetchError, match="Report inbox unavailable"):
            fetcher.fetch(ReportCategory.ORDERS, WINDOW)

    def test_connection_refused_becomes_fetch_error(self):
        def refused(host, port):
            raise ConnectionRefusedError("refused")

        with pytest.raises(FetchError):
            email_fetcher(refused).fetch(ReportCategory.ORDERS, WINDOW)

    def test_wait_ignores_messages_sent_before_request(self):
        clock = FakeClock()
        imap = FakeIMAP([report_email("Orders", "orders.csv", b"Code\nOLD\n", NOW - timedelta(minutes=5))])

        def deliver(seconds):
            clock.sleep(seconds)
            imap.messages.append(report_email("Orders", "orders.csv", b"Code\nNEW\n", NOW + timedelta(minutes=2)))

        fetcher = email_fetcher(imap, poll_interval_seconds=30, poll_timeout_seconds=600)
        fetcher._sleep = deliver
        fetcher._monotonic = clock.monotonic

        report = fetcher.wait_for_report(ReportCategory.ORDERS, NOW)

        assert report.content == b"Code\nNEW\n"
        assert report.delivery_method == DeliveryMethod.EMAIL
        assert imap.connections == 2
        assert clock.sleeps == [30]

    def test_wait_times_out(self):
        clock = FakeClock()
        fetcher = email_fetcher(FakeIMAP(), clock=clock, poll_interval_seconds=30, poll_timeout_seconds=60)

        with pytest.raises(FetchTimeoutError, match="within 60s") as exc_info:
            fetcher.wait_for_report(ReportCategory.ORDERS, NOW)

        assert exc_info.value.url == "imap://imap.example.com/INBOX"
        assert clock.sleeps == [30, 30]


# ============================================================================
# Registry
# ============================================================================


class TestBuildFetchers:
    def test_union_serves_report_categories(self):
        registry = build_fetchers(AppConfig(), EnvironmentConfig(union_api_token="tok"))

        assert isinstance(registry.get(ReportCategory.ORDERS), UnionReportFetcher)
        assert registry.get(ReportCategory.SHOPIFY_ORDERS) is None
        assert ReportCategory.SHOPIFY_ORDERS not in registry.categories()
        registry.close()

    def test_base_url_from_environment(self):
        registry = build_fetchers(
            AppConfig(), EnvironmentConfig(union_api_token="tok", union_base_url="https://staging.union.fit/")
        )

        assert registry.get(ReportCategory.ORDERS).base_url == "https://staging.union.fit"

    def test_missing_token_marks_categories_unavailable(self):
        registry = build_fetchers(AppConfig(), EnvironmentConfig())

        with pytest.raises(FetcherConfigurationError, match="UNION_API_TOKEN"):
            registry.get(ReportCategory.ORDERS)
        assert ReportCategory.ORDERS in registry.categories()

    def test_union_email_fallback_gets_inbox(self):
        config = AppConfig(sources={"email": {"enabled": True}})
        env = EnvironmentConfig(
            union_api_token="tok",
            inbox_host="imap.example.com",
            inbox_user="reports@example.com",
            inbox_password="secret",
        )

        union = build_fetchers(config, env).get(ReportCategory.ORDERS)

        assert isinstance(union.email_fetcher, EmailAttachmentFetcher)

    def test_email_only_mode(self):
        config = AppConfig(sources={"union": {"enabled": False}, "email": {"enabled": True}})
        env = EnvironmentConfig(inbox_host="imap.example.com", inbox_user="reports@example.com", inbox_password="secret")

        registry = build_fetchers(config, env)

        assert isinstance(registry.get(ReportCategory.FIRST_VISITS), EmailAttachmentFetcher)

    def test_email_only_without_credentials(self):
        config = AppConfig(sources={"union": {"enabled": False}, "email": {"enabled": True}})

        registry = build_fetchers(config, EnvironmentConfig())

        with pytest.raises(FetcherConfigurationError, match="REPORT_INBOX"):
            registry.get(ReportCategory.FIRST_VISITS)

    def test_shopify(self):
        config = AppConfig(sources={"shopify": {"enabled": True}})
        env = EnvironmentConfig(
            union_api_token="tok", shopify_store_domain="studio.myshopify.com", shopify_access_token="shpat"
        )

        assert isinstance(build_fetchers(config, env).get(ReportCategory.SHOPIFY_ORDERS), ShopifyOrderFetcher)

    def test_shopify_without_credentials(self):
        config = AppConfig(sources={"shopify": {"enabled": True}})

        registry = build_fetchers(config, EnvironmentConfig(union_api_token="tok"))

        with pytest.raises(FetcherConfigurationError, match="SHOPIFY"):
            registry.get(ReportCategory.SHOPIFY_ORDERS)


class TestFetcherRegistry:
    def test_categories_in_priority_order(self):
        registry = FetcherRegistry(
            {ReportCategory.SHOPIFY_ORDERS: Mock(), ReportCategory.NEW_CUSTOMERS: Mock()},
            {ReportCategory.ORDERS: "missing token"},
        )

        assert registry.categories() == [
            ReportCategory.NEW_CUSTOMERS,
            ReportCategory.ORDERS,
            ReportCategory.SHOPIFY_ORDERS,
        ]

    def test_close_each_fetcher_once(self):
        shared = Mock()
        registry = FetcherRegistry({ReportCategory.ORDERS: shared, ReportCategory.NEW_CUSTOMERS: shared})

        registry.close()

        shared.close.assert_called_once_with()
