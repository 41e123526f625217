"""End-to-end tests: HTTP trigger → fetch → parse → persist → watermark → freshness."""

import json
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from studio_pipeline.api import create_app
from studio_pipeline.config.models import AppConfig
from studio_pipeline.domain.models import RawReport, ReportCategory, WatermarkEntry
from studio_pipeline.persistence import (
    RecordRepository,
    WatermarkRepository,
    WatermarkStore,
    close_database,
    get_session,
    init_database,
)
from studio_pipeline.pipeline import FreshnessReporter, PipelineOrchestrator
from tests.helpers.fixture_fetcher import FixtureFetcher, orders_csv

NOW = datetime(2026, 2, 24, 12, 0, tzinfo=timezone.utc)


def clock():
    return NOW


@pytest.fixture
def test_database(tmp_path):
    """File-backed database with an orders watermark at 2026-02-20."""
    db_url = f"sqlite:///{tmp_path / 'test_end_to_end.db'}"
    init_database(db_url)
    with get_session() as session:
        WatermarkRepository(session).save(
            WatermarkEntry(
                category=ReportCategory.ORDERS,
                last_fetched=NOW - timedelta(days=1),
                high_water_date=date(2026, 2, 20),
                record_count=31,
            )
        )
    yield db_url
    close_database()


@pytest.fixture
def fetcher():
    """Orders export with 40 rows dated 2026-02-20 through 2026-02-24."""
    rows = [(f"ORD-{i:03d}", f"2026-02-{20 + i % 5}") for i in range(40)]
    return FixtureFetcher(reports={ReportCategory.ORDERS: RawReport(content=orders_csv(rows))})


@pytest.fixture
def orchestrator(test_database, fetcher):
    disabled = [c.value for c in ReportCategory if c is not ReportCategory.ORDERS]
    config = AppConfig(
        watermarks={"overlap_days": 0},
        orchestrator={"disabled_categories": disabled},
    )
    orchestrator = PipelineOrchestrator(
        config,
        fetchers={ReportCategory.ORDERS: fetcher},
        watermarks=WatermarkStore(config.watermarks, clock=clock),
        clock=clock,
    )
    # Commit timestamps follow the same fixed clock as the windows
    with patch("studio_pipeline.persistence.records.utc_now", clock):
        yield orchestrator
        orchestrator.reset()
        orchestrator.join(timeout=10)


@pytest.fixture
def client(orchestrator):
    freshness = FreshnessReporter(
        orchestrator.app_config.freshness,
        watermarks=orchestrator.watermarks,
        orchestrator=orchestrator,
        clock=clock,
    )
    return TestClient(create_app(orchestrator, freshness))


def sse_frames(body):
    frames = []
    for block in body.split("\n\n"):
        if block.startswith("event: "):
            event_line, data_line = block.split("\n", 1)
            frames.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return frames


class TestOrdersScenario:
    """Incremental orders ingestion from an existing watermark."""

    def test_incremental_run_advances_watermark(self, client, orchestrator, fetcher):
        gate = fetcher.block(ReportCategory.ORDERS)

        response = client.post("/pipeline")
        assert response.status_code == 200
        job_id = response.json()["jobId"]
        assert fetcher.entered.wait(timeout=5)

        # A second start while the first is mid-fetch is refused
        conflict = client.post("/pipeline")
        assert conflict.status_code == 409
        assert conflict.json()["jobId"] == job_id

        gate.set()
        assert orchestrator.join(timeout=10)

        # Window started at the stored high-water date
        _, window = fetcher.calls[0]
        assert (window.since, window.until) == (date(2026, 2, 20), date(2026, 2, 24))

        run = client.get(f"/pipeline/{job_id}").json()
        assert run["state"] == "complete"
        assert run["recordCounts"] == {"orders": 40}
        assert run["categories"]["orders"] == {
            "state": "saved",
            "recordCount": 40,
            "deliveryMethod": "direct",
        }

        with get_session() as session:
            watermark = WatermarkRepository(session).get(ReportCategory.ORDERS)
            counts = RecordRepository(session).table_counts()
        assert watermark.high_water_date == date(2026, 2, 24)
        assert watermark.last_fetched == NOW
        assert watermark.record_count == 40
        assert counts["orders"] == 40

        freshness = client.get("/freshness").json()
        assert freshness["sources"]["orders"]["status"] == "fresh"
        assert freshness["sources"]["orders"]["ageHours"] == 0.0
        assert freshness["lastRun"]["id"] == job_id
        assert freshness["tableCounts"]["orders"] == 40

        frames = sse_frames(client.get("/status", params={"jobId": job_id}).text)
        assert [event for event, _ in frames] == ["complete"]
        assert frames[0][1]["recordCounts"] == {"orders": 40}

    def test_rerun_is_idempotent(self, client, orchestrator, fetcher):
        first = client.post("/pipeline").json()["jobId"]
        orchestrator.join(timeout=10)
        second = client.post("/pipeline").json()["jobId"]
        orchestrator.join(timeout=10)

        assert first != second
        _, window = fetcher.calls[1]
        assert window.since == date(2026, 2, 24)

        with get_session() as session:
            assert RecordRepository(session).table_counts()["orders"] == 40
            assert WatermarkRepository(session).get(ReportCategory.ORDERS).high_water_date == date(2026, 2, 24)

        history = orchestrator.history()
        assert [run.id for run in history] == [second, first]

    def test_reset_mid_run_leaves_watermark_untouched(self, client, orchestrator, fetcher):
        gate = fetcher.block(ReportCategory.ORDERS)
        job_id = client.post("/pipeline").json()["jobId"]
        fetcher.entered.wait(timeout=5)

        assert client.delete("/pipeline").json()["cleared"] == 1
        gate.set()
        orchestrator.join(timeout=10)

        with get_session() as session:
            watermark = WatermarkRepository(session).get(ReportCategory.ORDERS)
            counts = RecordRepository(session).table_counts()
        assert watermark.high_water_date == date(2026, 2, 20)
        assert watermark.record_count == 31
        assert counts["orders"] == 0

        run = client.get(f"/pipeline/{job_id}").json()
        assert run["state"] == "error"
        assert run["errorMessage"] == "Manually reset by user"
