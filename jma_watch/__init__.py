"""
JMA Warning Watch

Polls the JMA XML feed and reports municipality-level warning changes:
- Conditional feed index fetch with a per-region cursor
- Two-stage XML parsing (feed index, warning report)
- Per (region, city, kind) state machine with soft deletes
- SQLite persistence, one transaction per cycle
- Scheduled cycles and daily cleanup
"""

from .database import Database
from .errors import (
    FetchError,
    MalformedFeed,
    MalformedReport,
    ParseError,
    PersistenceError,
    StateConflict,
    UnrecognizedCity,
    WatchError,
)
from .feed import FeedEntry, FeedIndexParser
from .report import CityObservation, NoWarningsInRegion, ReportParser, WarningStatus
from .client import CycleOutcome, FeedClient
from .engine import NotificationEvent, NotificationRequest, WarningStateEngine
from .notifier import LoggingNotifier, Notifier
from .watcher import CleanupResult, CycleResult, WarningWatcher

__version__ = "1.0.0"

__all__ = [
    "Database",
    "FetchError",
    "MalformedFeed",
    "MalformedReport",
    "ParseError",
    "PersistenceError",
    "StateConflict",
    "UnrecognizedCity",
    "WatchError",
    "FeedEntry",
    "FeedIndexParser",
    "CityObservation",
    "NoWarningsInRegion",
    "ReportParser",
    "WarningStatus",
    "CycleOutcome",
    "FeedClient",
    "NotificationEvent",
    "NotificationRequest",
    "WarningStateEngine",
    "LoggingNotifier",
    "Notifier",
    "CleanupResult",
    "CycleResult",
    "WarningWatcher",
]
