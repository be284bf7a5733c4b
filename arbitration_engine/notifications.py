"""
Arbitrator notifications.

Fire-and-forget: delivery problems are logged and never reach the caller.
Without NOTIFICATION_URL the notifier only logs.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import get_settings

logger = logging.getLogger(__name__)


class Notifier:
    """Posts assignment notifications to the notification service webhook."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.url = url if url is not None else settings.notification_url
        self.timeout = timeout if timeout is not None else settings.notification_timeout

    def notify_arbitrator_assignment(self, arbitrator_id: str, case: Dict[str, Any]) -> bool:
        if not self.url:
            logger.info(
                "Notification (log only): arbitrator %s assigned to %s",
                arbitrator_id, case.get("case_number"),
            )
            return False

        try:
            response = httpx.post(
                self.url,
                json={"type": "arbitrator_assignment", "arbitrator_id": arbitrator_id, "case": case},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Failed to notify arbitrator %s about %s: %s", arbitrator_id, case.get("case_number"), e)
            return False


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> None:
    """Swap the process-wide notifier (tests, alternate transports)."""
    global _notifier
    _notifier = notifier
