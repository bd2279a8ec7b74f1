import logging
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from core.config import settings
from core.models import utcnow

logger = logging.getLogger(__name__)

CRITICAL = "CRITICAL"
WARNING = "WARNING"
INFO = "INFO"

_LOG_LEVELS = {
    CRITICAL: logging.CRITICAL,
    WARNING: logging.WARNING,
    INFO: logging.INFO,
}


@dataclass
class Alert:
    severity: str
    message: str
    source: str
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "severity": self.severity,
            "message": self.message,
            "source": self.source,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AlertDispatcher:
    """Logs every alert and, when configured, posts it to an alert webhook."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def dispatch(self, alert: Alert) -> None:
        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.WARNING),
            "[%s] %s %s",
            alert.source,
            alert.message,
            alert.details or "",
        )

        if not self.webhook_url:
            return

        try:
            resp = httpx.post(self.webhook_url, json=alert.to_dict(), timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            # delivery is best effort, the log line above is the record
            logger.error("Alert delivery to webhook failed: %s", str(e)[:200])

    def dispatch_all(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            self.dispatch(alert)


_dispatcher: AlertDispatcher | None = None


def get_alert_dispatcher() -> AlertDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = AlertDispatcher(webhook_url=settings.ALERT_WEBHOOK_URL)
    return _dispatcher
