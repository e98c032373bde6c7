"""
Outbound delivery boundary.

The dispatcher decides that and to whom something must be delivered; these
classes perform the delivery. Email/SMS transport is an external
collaborator, so the default notification sender only logs. Partner
webhooks go over HTTP with a hard timeout so one unresponsive partner
cannot stall a sweep.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class NotificationSender(ABC):
    @abstractmethod
    def send_notification(self, recipient: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Deliver one notification. Raise on failure."""


class WebhookClient(ABC):
    @abstractmethod
    def call_webhook(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> WebhookResponse:
        """POST a payload to a partner endpoint. Raise on transport failure or timeout."""


class LoggingNotificationSender(NotificationSender):
    """Records the notification in the application log instead of sending it."""

    def send_notification(self, recipient, event_type, payload):
        logger.info(f"Notification to {recipient} [{event_type}]: {payload.get('subject')}")


class HttpxWebhookClient(WebhookClient):
    """Partner webhook client over httpx."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = httpx.Timeout(timeout_seconds)

    def call_webhook(self, endpoint, payload, headers=None):
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(endpoint, json=payload, headers=request_headers)

        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text}

        return WebhookResponse(status_code=response.status_code, body=body)
