"""
Outbound notification seam.

Delivery and formatting belong to the collaborator; the watcher only hands
over NotificationRequest objects after the cycle has committed.
"""

import logging
from abc import ABC, abstractmethod
from typing import Sequence

from .engine import NotificationRequest

logger = logging.getLogger(__name__)

JMA_WARNING_URL = "https://www.jma.go.jp/bosai/warning/#lang=ja"


class Notifier(ABC):
    """Base class for notification collaborators."""

    @abstractmethod
    def send(self, request: NotificationRequest) -> None:
        """Deliver one request; raise on failure."""

    def send_all(self, requests: Sequence[NotificationRequest]) -> int:
        """Send every request; a failing request does not stop the others."""
        sent = 0
        for request in requests:
            try:
                self.send(request)
                sent += 1
            except Exception as e:
                logger.error(f"Notification failed for {request.city} / {request.kind}: {e}")
        return sent


def format_body(request: NotificationRequest) -> str:
    """Plain-text body: one KEY:value line per field."""
    return "\n".join([
        f"LWO:{request.region}",
        f"CITY:{request.city}",
        f"WARN:{request.kind}",
        f"STAT:{request.new_status}",
        f"PREV:{request.old_status or '-'}",
        f"EVENT:{request.event.value}",
        f"URL:{JMA_WARNING_URL}",
        "END",
    ])


class LoggingNotifier(Notifier):
    """Logs each request; used when no delivery channel is configured."""

    def send(self, request: NotificationRequest) -> None:
        logger.info(f"[{request.event.value}] {request.region} {request.summary}")
        logger.debug(format_body(request))

