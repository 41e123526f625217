"""Report inbox fetcher for exports delivered as email attachments.

Union.fit sends large exports by email instead of answering the API call
directly. This fetcher watches an IMAP mailbox for those messages and hands
back the CSV attachment (zipped or not) for the requested category.
"""

import email
import imaplib
import io
import re
import time
import zipfile
from datetime import date, datetime
from email.message import EmailMessage
from email.policy import default as default_policy
from email.utils import parsedate_to_datetime
from typing import Callable, List, Optional, Tuple

from studio_pipeline.domain.models import DeliveryMethod, FetchWindow, RawReport, ReportCategory
from studio_pipeline.logging import get_logger
from studio_pipeline.utils.timestamps import ensure_utc

from .exceptions import FetcherConfigurationError, FetchError, FetchResponseError, FetchTimeoutError

logger = get_logger(__name__, component="fetcher")

# First match wins
REPORT_PATTERNS: List[Tuple[re.Pattern, ReportCategory]] = [
    (re.compile(r"first.?visit", re.I), ReportCategory.FIRST_VISITS),
    (re.compile(r"new.?customer", re.I), ReportCategory.NEW_CUSTOMERS),
    (re.compile(r"order|transaction", re.I), ReportCategory.ORDERS),
    (re.compile(r"cancel", re.I), ReportCategory.CANCELED_AUTO_RENEWS),
    (re.compile(r"new.*(auto.?renew|subscription)", re.I), ReportCategory.NEW_AUTO_RENEWS),
    (re.compile(r"active.*(auto.?renew|subscription)", re.I), ReportCategory.ACTIVE_AUTO_RENEWS),
    (re.compile(r"pause", re.I), ReportCategory.PAUSED_AUTO_RENEWS),
    (re.compile(r"trial", re.I), ReportCategory.TRIALING_AUTO_RENEWS),
    (re.compile(r"registration", re.I), ReportCategory.FULL_REGISTRATIONS),
    (re.compile(r"revenue", re.I), ReportCategory.REVENUE_CATEGORIES),
]


def classify_report(text: Optional[str]) -> Optional[ReportCategory]:
    """Map an email subject or attachment filename to a report category.

    Example:
        >>> classify_report("first_visits_2026-02-24.csv")
        <ReportCategory.FIRST_VISITS: 'firstVisits'>
    """
    if not text:
        return None
    for pattern, category in REPORT_PATTERNS:
        if pattern.search(text):
            return category
    return None


class EmailAttachmentFetcher:
    """Reads report attachments from an IMAP inbox.

    Used directly for categories configured to arrive by email, and by the
    Union.fit fetcher when an export is queued for email delivery.
    """

    name = "email"
    categories = frozenset(category for _, category in REPORT_PATTERNS)

    def __init__(
        self,
        host: Optional[str],
        user: Optional[str],
        password: Optional[str],
        port: int = 993,
        mailbox: str = "INBOX",
        sender: str = "union.fit",
        poll_interval_seconds: float = 30,
        poll_timeout_seconds: float = 600,
        imap_factory: Callable[..., imaplib.IMAP4] = imaplib.IMAP4_SSL,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not (host and user and password):
            raise FetcherConfigurationError(
                "REPORT_INBOX_HOST, REPORT_INBOX_USER and REPORT_INBOX_PASSWORD must be set"
            )
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.mailbox = mailbox
        self.sender = sender
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self._imap_factory = imap_factory
        self._sleep = sleep
        self._monotonic = monotonic

    def supports(self, category: ReportCategory) -> bool:
        return category in self.categories

    def fetch(self, category: ReportCategory, window: FetchWindow) -> RawReport:
        """Return the newest matching attachment received since ``window.since``.

        Raises:
            FetchError: If no matching attachment is in the inbox
        """
        report = self._find(category, window.since, not_before=None)
        if report is None:
            raise FetchError(f"No emailed {category.label} report since {window.since}")
        return report

    def wait_for_report(self, category: ReportCategory, requested_at: datetime) -> RawReport:
        """Poll the inbox until an attachment sent after ``requested_at`` arrives.

        Raises:
            FetchTimeoutError: If nothing arrives within poll_timeout_seconds
        """
        requested_at = ensure_utc(requested_at)
        deadline = self._monotonic() + self.poll_timeout_seconds
        attempts = 0

        while True:
            attempts += 1
            report = self._find(category, requested_at.date(), not_before=requested_at)
            if report is not None:
                logger.info(
                    f"Received emailed {category.label} report after {attempts} check(s)",
                    extra={
                        "event": "fetcher.email.received",
                        "category": category.value,
                        "attempts": attempts,
                        "report_filename": report.filename,
                    },
                )
                return report
            if self._monotonic() >= deadline:
                raise FetchTimeoutError(
                    f"No emailed {category.label} report within {self.poll_timeout_seconds:g}s",
                    url=f"imap://{self.host}/{self.mailbox}",
                )
            self._sleep(self.poll_interval_seconds)

    def _find(
        self,
        category: ReportCategory,
        since: date,
        not_before: Optional[datetime],
    ) -> Optional[RawReport]:
        try:
            with self._imap_factory(self.host, self.port) as imap:
                imap.login(self.user, self._password)
                status, _ = imap.select(self.mailbox, readonly=True)
                if status != "OK":
                    raise FetchResponseError(f"Cannot open mailbox {self.mailbox}")

                criteria = f'(FROM "{self.sender}" SINCE {since.strftime("%d-%b-%Y")})'
                status, data = imap.search(None, criteria)
                if status != "OK":
                    raise FetchResponseError(f"Inbox search failed: {criteria}")

                # Newest first
                for message_id in reversed(data[0].split()):
                    message = self._load(imap, message_id)
                    if message is None:
                        continue
                    if not_before is not None and _sent_before(message, not_before):
                        continue
                    report = _report_from_message(message, category)
                    if report is not None:
                        return report
                return None
        except (imaplib.IMAP4.error, OSError) as e:
            logger.error(
                f"IMAP error while looking for {category.value}: {e}",
                extra={"event": "fetcher.email.error", "host": self.host, "error_type": type(e).__name__},
            )
            raise FetchError(f"Report inbox unavailable: {e}") from e

    def _load(self, imap: imaplib.IMAP4, message_id: bytes) -> Optional[EmailMessage]:
        status, parts = imap.fetch(message_id, "(RFC822)")
        if status != "OK":
            logger.warning(
                f"Could not fetch message {message_id!r}",
                extra={"event": "fetcher.email.message_skipped"},
            )
            return None
        for part in parts:
            if isinstance(part, tuple):
                return email.message_from_bytes(part[1], policy=default_policy)
        return None


def _sent_before(message: EmailMessage, cutoff: datetime) -> bool:
    header = message.get("Date")
    if not header:
        return False
    try:
        return ensure_utc(parsedate_to_datetime(str(header))) < cutoff
    except (TypeError, ValueError):
        return False


def _report_from_message(message: EmailMessage, category: ReportCategory) -> Optional[RawReport]:
    subject = str(message.get("Subject", ""))
    subject_category = classify_report(subject)

    for part in message.iter_attachments():
        filename = part.get_filename() or ""
        payload = part.get_payload(decode=True)
        if not payload:
            continue

        if filename.lower().endswith(".zip"):
            extracted = _csv_from_zip(payload, category)
            if extracted is None:
                continue
            filename, payload = extracted
        elif not filename.lower().endswith(".csv"):
            continue

        if (classify_report(filename) or subject_category) is not category:
            continue

        return RawReport(
            content=payload,
            delivery_method=DeliveryMethod.EMAIL,
            filename=filename,
            metadata={"subject": subject, "message_date": str(message.get("Date", ""))},
        )
    return None


def _csv_from_zip(payload: bytes, category: ReportCategory) -> Optional[Tuple[str, bytes]]:
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as archive:
            members = [n for n in archive.namelist() if n.lower().endswith(".csv")]
            if not members:
                return None
            # Prefer a member named for the category; fall back to the first CSV
            chosen = next((n for n in members if classify_report(n) is category), members[0])
            return chosen, archive.read(chosen)
    except zipfile.BadZipFile:
        logger.warning("Skipping corrupt zip attachment", extra={"event": "fetcher.email.bad_zip"})
        return None
