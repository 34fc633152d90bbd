"""Shared fixtures: temporary database and a scripted HTTP session."""

from typing import Dict, List, Optional

import pytest
import requests

from jma_watch.database import Database
from jma_watch.engine import NotificationRequest
from jma_watch.notifier import Notifier


class DummyResponse:
    def __init__(self, status_code: int, content: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Returns scripted outcomes in order; exceptions are raised."""

    def __init__(self, outcomes: Optional[List[object]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: List[tuple] = []

    def queue(self, *outcomes: object) -> None:
        self.outcomes.extend(outcomes)

    def get(self, url: str, headers: object = None, timeout: object = None) -> DummyResponse:
        self.calls.append((url, dict(headers or {}), timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


class CollectingNotifier(Notifier):
    """Keeps requests in memory, in emission order."""

    def __init__(self) -> None:
        self.sent: List[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> None:
        self.sent.append(request)


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "weather.sqlite3"))
    yield database
    database.close()


@pytest.fixture
def session():
    return FakeSession()
