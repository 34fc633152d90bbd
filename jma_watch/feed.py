"""
Feed index parser for the JMA "extra" Atom feed.

The feed index lists every report the JMA published recently. Only entries
titled with the weather warning/advisory marker are kept; each one is reduced
to the observatory (region) that published it, the report URL, the report
filename and the last-updated timestamp.
"""

import logging
import xml.etree.ElementTree as ET
from calendar import timegm
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

import feedparser

from .errors import MalformedFeed

logger = logging.getLogger(__name__)

# Title used by the JMA for municipality-level warning/advisory reports (VPWW54)
WARNING_FEED_TITLE = "気象警報・注意報（Ｈ２７）"


@dataclass(frozen=True)
class FeedEntry:
    """One candidate report reference from the feed index."""
    region: str
    url: str
    filename: str
    updated: datetime
    title: str = WARNING_FEED_TITLE


class FeedIndexParser:
    """
    Parses the outer feed document into candidate report references.

    Link elements may be self-closing or carry separate open/close tags;
    feedparser normalizes both into the same ``link`` value. Entries missing
    a region, link or timestamp are dropped, not fatal.
    """

    def __init__(self, title_marker: str = WARNING_FEED_TITLE):
        self.title_marker = title_marker

    def parse(self, content: bytes) -> List[FeedEntry]:
        """Return matching entries, newest first (ties keep document order)."""
        self._validate_xml_structure(content)

        parsed = feedparser.parse(content)
        if parsed.bozo:
            # Well-formedness was checked above; anything left is cosmetic
            logger.debug(f"Feed parser reported: {parsed.bozo_exception}")

        entries = []
        dropped = 0
        for item in parsed.entries:
            if (item.get("title") or "").strip() != self.title_marker:
                continue

            entry = self._parse_entry(item)
            if entry is None:
                dropped += 1
                continue
            entries.append(entry)

        if dropped:
            logger.warning(f"Dropped {dropped} feed entries with missing fields")

        # sorted() is stable, so equal timestamps stay in document order
        return sorted(entries, key=lambda e: e.updated, reverse=True)

    def filter_region(self, entries: List[FeedEntry], region: str) -> List[FeedEntry]:
        """Keep only entries published by the given region."""
        return [e for e in entries if e.region == region]

    def _validate_xml_structure(self, content: bytes) -> None:
        """Reject empty or non well-formed documents."""
        if not content or not content.strip():
            raise MalformedFeed("Feed document is empty")

        try:
            ET.fromstring(content)
        except ET.ParseError as e:
            raise MalformedFeed(f"Feed XML is malformed: {e}")

    def _parse_entry(self, item) -> Optional[FeedEntry]:
        region = self._extract_region(item)
        url = self._extract_link(item)
        updated = self._extract_updated(item)

        if not (region and url and updated):
            return None

        filename = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
        if not filename:
            return None

        return FeedEntry(
            region=region,
            url=url,
            filename=filename,
            updated=updated,
            title=item.get("title", "").strip(),
        )

    def _extract_region(self, item) -> Optional[str]:
        # The publishing observatory is the entry author
        author = item.get("author") or ""
        if not author:
            detail = item.get("author_detail") or {}
            author = detail.get("name") or ""
        return author.strip() or None

    def _extract_link(self, item) -> Optional[str]:
        link = item.get("link")
        if link:
            return link.strip()
        for candidate in item.get("links", []):
            href = candidate.get("href")
            if href:
                return href.strip()
        return None

    def _extract_updated(self, item) -> Optional[datetime]:
        parsed = item.get("updated_parsed") or item.get("published_parsed")
        if not parsed:
            return None
        return datetime.fromtimestamp(timegm(parsed), tz=timezone.utc)
