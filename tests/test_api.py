"""Tests for the monitoring API; globals are wired directly, without the lifespan."""

import pytest
from fastapi.testclient import TestClient

from jma_watch import api
from jma_watch.client import FeedClient
from jma_watch.scheduler import WarningScheduler
from jma_watch.watcher import WarningWatcher

from conftest import DummyResponse
from samples import REGION, city_report, feed, feed_entry

FEED_URL = "https://www.data.jma.go.jp/developer/xml/feed/extra.xml"


@pytest.fixture
def wired(db, session, monkeypatch):
    client = FeedClient(db, feed_url=FEED_URL, session=session)
    scheduler = WarningScheduler(WarningWatcher(db, client), {REGION: ["裾野市"]})
    monkeypatch.setattr(api, "db", db)
    monkeypatch.setattr(api, "scheduler", scheduler)
    return TestClient(api.app)


def test_uninitialized_service_is_unavailable(monkeypatch):
    monkeypatch.setattr(api, "db", None)
    monkeypatch.setattr(api, "scheduler", None)
    client = TestClient(api.app)

    assert client.get("/warnings").status_code == 503
    assert client.get("/health").json()["risks"] == ["System not initialized"]


def test_trigger_cycle_then_list_warnings(wired, session):
    session.queue(
        DummyResponse(200, feed(feed_entry("1.xml")), {"Last-Modified": "T1"}),
        DummyResponse(200, city_report([("裾野市", [("大雪注意報", "発表")])])),
    )

    cycles = wired.post("/cycles").json()
    warnings = wired.get("/warnings", params={"region": REGION}).json()
    reports = wired.get(f"/reports/{REGION}").json()

    assert [(c["region"], c["outcome"]) for c in cycles] == [(REGION, "fetched")]
    assert [(w["city"], w["kind"], w["status"]) for w in warnings] == [("裾野市", "大雪注意報", "issued")]
    assert [r["filename"] for r in reports] == ["1.xml"]
    assert reports[0]["parse_ok"] is True
    assert wired.get("/cycles").json() == cycles


def test_unknown_region_reports_404(wired):
    assert wired.get("/reports/存在しない気象台").status_code == 404
    assert wired.get(f"/reports/{REGION}").json() == []


def test_health_flags_stopped_scheduler(wired):
    body = wired.get("/health").json()

    assert body["status"] == "degraded"
    assert "Scheduler not running" in body["risks"]
