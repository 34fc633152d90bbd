"""Tests for the feed client."""

import pytest
import requests

from jma_watch.client import CycleOutcome, FeedClient, ReportParseFailure
from jma_watch.errors import FetchError, MalformedFeed

from conftest import DummyResponse
from samples import REGION, city_report, feed, feed_entry, report

FEED_URL = "https://www.data.jma.go.jp/developer/xml/feed/extra.xml"
LAST_MODIFIED = "Fri, 10 Jan 2025 00:00:00 GMT"


def index_response(*entries, token=LAST_MODIFIED):
    return DummyResponse(200, feed(*entries), {"Last-Modified": token})


class TestFetchIndex:
    def test_first_fetch_is_unconditional(self, db, session):
        session.queue(index_response())
        client = FeedClient(db, feed_url=FEED_URL, session=session, timeout=7)

        result = client.fetch_index(None)

        assert not result.not_modified
        assert result.token == LAST_MODIFIED
        url, headers, timeout = session.calls[0]
        assert url == FEED_URL
        assert headers == {}
        assert timeout == 7

    def test_sends_if_modified_since(self, db, session):
        session.queue(DummyResponse(304))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        result = client.fetch_index(LAST_MODIFIED)

        assert result.not_modified
        assert session.calls[0][1] == {"If-Modified-Since": LAST_MODIFIED}

    def test_sends_if_none_match_for_etag_tokens(self, db, session):
        session.queue(DummyResponse(304))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        client.fetch_index('W/"abc"')

        assert session.calls[0][1] == {"If-None-Match": 'W/"abc"'}

    def test_etag_used_when_last_modified_missing(self, db, session):
        session.queue(DummyResponse(200, feed(), {"ETag": '"v2"'}))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        assert client.fetch_index(None).token == '"v2"'

    def test_timeout_becomes_fetch_error(self, db, session):
        session.queue(requests.Timeout("slow"))
        client = FeedClient(db, feed_url=FEED_URL, session=session, timeout=3)

        with pytest.raises(FetchError, match="timed out after 3s"):
            client.fetch_index(None)

    def test_connection_error_becomes_fetch_error(self, db, session):
        session.queue(requests.ConnectionError("refused"))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        with pytest.raises(FetchError, match="source unavailable"):
            client.fetch_index(None)

    def test_http_error_status(self, db, session):
        session.queue(DummyResponse(503))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        with pytest.raises(FetchError) as exc_info:
            client.fetch_index(None)

        assert exc_info.value.status_code == 503


class TestRunCycle:
    def test_not_modified_short_circuits(self, db, session):
        db.set_cursor(f"{FEED_URL}#{REGION}", LAST_MODIFIED, "2025-01-10T00:00:00+00:00")
        session.queue(DummyResponse(304))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        fetch = client.run_cycle(REGION)

        assert fetch.outcome is CycleOutcome.UNCHANGED
        assert fetch.cursor is None
        assert len(session.calls) == 1

    def test_fetches_newest_report_of_region(self, db, session):
        body = city_report([("裾野市", [("大雪注意報", "発表")])])
        session.queue(
            index_response(
                feed_entry("old.xml", updated="2025-01-10T00:00:00Z"),
                feed_entry("new.xml", updated="2025-01-10T01:00:00Z"),
                feed_entry("tokyo.xml", updated="2025-01-10T02:00:00Z", region="気象庁予報部"),
            ),
            DummyResponse(200, body),
        )
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        fetch = client.run_cycle(REGION)

        assert fetch.outcome is CycleOutcome.FETCHED
        assert fetch.entry.filename == "new.xml"
        assert fetch.candidates == 2
        assert session.calls[1][0].endswith("/new.xml")
        assert fetch.cursor.endpoint == f"{FEED_URL}#{REGION}"
        assert fetch.cursor.token == LAST_MODIFIED
        assert fetch.archive.existing_id is None
        assert not fetch.archive.cached
        assert [o.city for o in fetch.observations] == ["裾野市"]

    def test_archived_report_is_not_downloaded_again(self, db, session):
        body = city_report([("裾野市", [("大雪注意報", "発表")])])
        archive_id = db.insert_archive(REGION, "new.xml", None, body, "h", "2025-01-10T00:00:00+00:00")
        session.queue(index_response(feed_entry("new.xml")))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        fetch = client.run_cycle(REGION)

        assert len(session.calls) == 1
        assert fetch.archive.cached
        assert fetch.archive.existing_id == archive_id
        assert fetch.archive.content == body

    def test_identical_content_under_new_name_points_at_latest_archive(self, db, session):
        body = city_report([("裾野市", [("大雪注意報", "発表")])])
        client = FeedClient(db, feed_url=FEED_URL, session=session)
        archive_id = db.insert_archive(
            REGION, "first.xml", None, body, client._compute_hash(body), "2025-01-10T00:00:00+00:00"
        )
        session.queue(index_response(feed_entry("second.xml")), DummyResponse(200, body))

        fetch = client.run_cycle(REGION)

        assert fetch.archive.existing_id == archive_id
        assert not fetch.archive.cached

    def test_no_entry_for_region(self, db, session):
        session.queue(index_response(feed_entry("tokyo.xml", region="気象庁予報部")))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        fetch = client.run_cycle(REGION)

        assert fetch.outcome is CycleOutcome.NO_ENTRY
        assert fetch.cursor is not None
        assert fetch.observations == []

    def test_malformed_feed_propagates(self, db, session):
        session.queue(DummyResponse(200, b"<feed><entry>", {"Last-Modified": LAST_MODIFIED}))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        with pytest.raises(MalformedFeed):
            client.run_cycle(REGION)

    def test_malformed_report_carries_archive_intent(self, db, session):
        session.queue(index_response(feed_entry("broken.xml")), DummyResponse(200, report(body=False)))
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        with pytest.raises(ReportParseFailure) as exc_info:
            client.run_cycle(REGION)

        assert exc_info.value.archive.filename == "broken.xml"
        assert "broken.xml" in str(exc_info.value)

    def test_cursor_is_per_region(self, db, session):
        db.set_cursor(f"{FEED_URL}#other", LAST_MODIFIED, "2025-01-10T00:00:00+00:00")
        session.queue(index_response())
        client = FeedClient(db, feed_url=FEED_URL, session=session)

        client.run_cycle(REGION)

        assert session.calls[0][1] == {}
