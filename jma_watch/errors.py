"""
Error taxonomy for the JMA warning watcher.

Document-level and fetch-level errors abort the cycle for one region.
Per-block errors (UnrecognizedCity) and data-quality events (StateConflict)
are logged and skipped; they never leave a cycle.
"""

from typing import Optional


class WatchError(Exception):
    """Base class for all watcher errors."""
    pass


class FetchError(WatchError):
    """Network failure, timeout or non-success HTTP status."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ParseError(WatchError):
    """Custom exception for feed and report parsing errors."""
    pass


class MalformedFeed(ParseError):
    """The outer feed index is not well-formed XML."""
    pass


class MalformedReport(ParseError):
    """A report document lacks its head/body sections or yields nothing."""
    pass


class UnrecognizedCity(ParseError):
    """A city block uses an unknown bracket convention (recoverable)."""

    def __init__(self, message: str, block_type: Optional[str] = None):
        super().__init__(message)
        self.block_type = block_type


class PersistenceError(WatchError):
    """Storage I/O failure or constraint violation."""
    pass


class StateConflict(WatchError):
    """Unexpected current-state/observation combination (data-quality event)."""

    def __init__(self, message: str, region: str, city: str, kind: str):
        super().__init__(message)
        self.region = region
        self.city = city
        self.kind = kind
