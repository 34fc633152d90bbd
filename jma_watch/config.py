"""
Environment configuration for the JMA warning watcher.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List

from .client import DEFAULT_TIMEOUT, JMA_FEED_URL
from .watcher import DEFAULT_RETENTION_DAYS

# Polling intervals
POLL_INTERVAL_MINUTES = 10
CLEANUP_HOUR = 1

DEFAULT_TARGETS = "静岡地方気象台=裾野市,御殿場市"


def parse_targets(value: str) -> Dict[str, List[str]]:
    """
    Parse ``region=city,city;region=city`` into a region -> cities mapping.

    Blank segments are ignored; a region listed twice accumulates its cities.
    """
    targets: Dict[str, List[str]] = {}
    for segment in value.split(";"):
        if "=" not in segment:
            continue
        region, cities = segment.split("=", 1)
        region = region.strip()
        if not region:
            continue
        names = targets.setdefault(region, [])
        for city in cities.split(","):
            city = city.strip()
            if city and city not in names:
                names.append(city)
    return targets


@dataclass
class Settings:
    db_path: str = os.path.join("data", "weather.sqlite3")
    feed_url: str = JMA_FEED_URL
    http_timeout: int = DEFAULT_TIMEOUT
    poll_interval_minutes: int = POLL_INTERVAL_MINUTES
    cleanup_hour: int = CLEANUP_HOUR
    retention_days: int = DEFAULT_RETENTION_DAYS
    targets: Dict[str, List[str]] = field(default_factory=lambda: parse_targets(DEFAULT_TARGETS))

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("DB_PATH", os.path.join("data", "weather.sqlite3")),
            feed_url=os.getenv("FEED_URL", JMA_FEED_URL),
            http_timeout=int(os.getenv("HTTP_TIMEOUT", str(DEFAULT_TIMEOUT))),
            poll_interval_minutes=int(os.getenv("POLL_INTERVAL_MINUTES", str(POLL_INTERVAL_MINUTES))),
            cleanup_hour=int(os.getenv("CLEANUP_HOUR", str(CLEANUP_HOUR))),
            retention_days=int(os.getenv("RETENTION_DAYS", str(DEFAULT_RETENTION_DAYS))),
            targets=parse_targets(os.getenv("WATCH_TARGETS", DEFAULT_TARGETS)),
        )
