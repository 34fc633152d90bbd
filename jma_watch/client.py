"""
Feed client for the JMA warning watcher.

Handles data retrieval for one region per cycle:
- Conditional fetch of the feed index (If-Modified-Since / If-None-Match)
- Selection of the newest warning report published by the region
- Report download, using the report archive as a cache
- Parsing via FeedIndexParser and ReportParser

The client performs no writes. It returns a CycleFetch carrying the parsed
observations plus the cursor and archive writes the caller commits together
with the state update.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .database import Database
from .errors import FetchError, MalformedReport
from .feed import FeedEntry, FeedIndexParser
from .report import Observation, ParsedReport, ReportParser

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_TIMEOUT = 15  # seconds
MAX_RETRIES = 0       # a failed fetch is retried on the next trigger only
USER_AGENT = "JMAWarningWatch/1.0 (+https://www.data.jma.go.jp/developer/)"

JMA_FEED_URL = "https://www.data.jma.go.jp/developer/xml/feed/extra.xml"


class CycleOutcome(Enum):
    """Result classification of one region cycle."""
    UNCHANGED = "unchanged"  # feed index not modified
    NO_ENTRY = "no_entry"    # index modified, nothing published by the region
    FETCHED = "fetched"      # a report was parsed into observations
    SKIPPED = "skipped"      # another cycle for the region was in flight
    FAILED = "failed"


@dataclass
class IndexResponse:
    """Result of a conditional feed index request."""
    not_modified: bool
    content: bytes = b""
    token: Optional[str] = None


@dataclass
class CursorWrite:
    endpoint: str
    token: Optional[str]
    fetched_at: str


@dataclass
class ArchiveWrite:
    """
    Archive intent for one report.

    ``existing_id`` points at an archive entry that already holds this
    report (the same file, or the newest entry of the region with an
    identical content hash); only its freshness timestamp is refreshed then.
    ``cached`` is set when no download happened.
    """
    region: str
    filename: str
    report_url: str
    content: bytes
    content_hash: str
    retrieved_at: str
    existing_id: Optional[int] = None
    cached: bool = False


@dataclass
class CycleFetch:
    """What one FeedClient cycle produced for the caller to commit."""
    region: str
    outcome: CycleOutcome
    cursor: Optional[CursorWrite] = None
    entry: Optional[FeedEntry] = None
    archive: Optional[ArchiveWrite] = None
    report: Optional[ParsedReport] = None
    candidates: int = 0

    @property
    def observations(self) -> List[Observation]:
        return self.report.observations if self.report else []


class ReportParseFailure(MalformedReport):
    """A downloaded report could not be parsed; carries the archive intent."""

    def __init__(self, message: str, archive: ArchiveWrite):
        super().__init__(message)
        self.archive = archive


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FeedClient:
    """
    Client for the JMA XML feed.

    Dependability features:
    - Every request is bounded by a timeout
    - Conditional requests keyed by a per-region cursor
    - Report archive used as a download cache
    - Content hash to detect re-published identical reports
    """

    def __init__(
        self,
        database: Database,
        feed_url: str = JMA_FEED_URL,
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        index_parser: Optional[FeedIndexParser] = None,
        report_parser: Optional[ReportParser] = None
    ):
        self.database = database
        self.feed_url = feed_url
        self.timeout = timeout
        self._session = session or self._create_session()
        self.index_parser = index_parser or FeedIndexParser()
        self.report_parser = report_parser or ReportParser()

    def _create_session(self) -> requests.Session:
        """Create HTTP session; retries are left to the scheduler."""
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/atom+xml, application/xml, text/xml, */*"
        })

        return session

    def endpoint_for(self, region: str) -> str:
        """Cursor key: the feed URL as polled for one region."""
        return f"{self.feed_url}#{region}"

    def _get(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        try:
            response = self._session.get(url, headers=headers or {}, timeout=self.timeout)
        except requests.Timeout:
            raise FetchError(f"Request timed out after {self.timeout}s", url=url)
        except requests.ConnectionError as e:
            raise FetchError(f"Connection error - source unavailable: {e}", url=url)
        except requests.RequestException as e:
            raise FetchError(f"Request failed: {e}", url=url)

        if response.status_code == 304:
            return response

        try:
            response.raise_for_status()
        except requests.HTTPError:
            raise FetchError(f"HTTP error {response.status_code}", url=url, status_code=response.status_code)

        return response

    def _compute_hash(self, content: bytes) -> str:
        """Compute SHA-256 hash of raw report bytes."""
        return hashlib.sha256(content).hexdigest()

    # =========================================================================
    # Feed Index
    # =========================================================================

    def fetch_index(self, token: Optional[str]) -> IndexResponse:
        """Conditionally fetch the feed index."""
        headers = {}
        if token:
            if token.startswith('"') or token.startswith('W/"'):
                headers["If-None-Match"] = token
            else:
                headers["If-Modified-Since"] = token

        response = self._get(self.feed_url, headers)

        if response.status_code == 304:
            logger.debug(f"Feed index not modified: {self.feed_url}")
            return IndexResponse(not_modified=True, token=token)

        new_token = response.headers.get("Last-Modified") or response.headers.get("ETag")
        return IndexResponse(not_modified=False, content=response.content, token=new_token)

    # =========================================================================
    # Report
    # =========================================================================

    def fetch_report(self, entry: FeedEntry) -> ArchiveWrite:
        """Return the report body, from the archive when already downloaded."""
        now = utcnow_iso()
        cached = self.database.get_archive_by_filename(entry.region, entry.filename)

        if cached:
            logger.debug(f"Using archived report {entry.filename}")
            content = bytes(cached["content"])
            cached_flag = True
        else:
            response = self._get(entry.url)
            content = response.content
            cached_flag = False
            logger.info(f"Downloaded report {entry.filename} ({len(content)} bytes)")

        content_hash = self._compute_hash(content)
        if cached:
            existing_id = cached["id"]
        else:
            latest = self.database.get_latest_archive(entry.region)
            existing_id = latest["id"] if latest and latest["content_hash"] == content_hash else None

        return ArchiveWrite(
            region=entry.region,
            filename=entry.filename,
            report_url=entry.url,
            content=content,
            content_hash=content_hash,
            retrieved_at=now,
            existing_id=existing_id,
            cached=cached_flag,
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self, region: str) -> CycleFetch:
        """
        Fetch and parse what is new for one region.

        Raises:
            FetchError: network failure, timeout or non-success status
            MalformedFeed: the feed index is not well-formed
            ReportParseFailure: the selected report could not be parsed
        """
        endpoint = self.endpoint_for(region)
        cursor = self.database.get_cursor(endpoint)
        token = cursor["token"] if cursor else None

        index = self.fetch_index(token)
        if index.not_modified:
            return CycleFetch(region=region, outcome=CycleOutcome.UNCHANGED)

        cursor_write = CursorWrite(endpoint=endpoint, token=index.token, fetched_at=utcnow_iso())

        entries = self.index_parser.parse(index.content)
        candidates = self.index_parser.filter_region(entries, region)
        if not candidates:
            logger.info(f"No warning report in feed index for {region}")
            return CycleFetch(region=region, outcome=CycleOutcome.NO_ENTRY, cursor=cursor_write)

        entry = candidates[0]
        archive = self.fetch_report(entry)

        try:
            report = self.report_parser.parse(archive.content)
        except MalformedReport as e:
            raise ReportParseFailure(f"{entry.filename}: {e}", archive)

        return CycleFetch(
            region=region,
            outcome=CycleOutcome.FETCHED,
            cursor=cursor_write,
            entry=entry,
            archive=archive,
            report=report,
            candidates=len(candidates),
        )

    def close(self) -> None:
        """Close HTTP session."""
        self._session.close()
