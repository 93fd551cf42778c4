"""
Notification Transports

The engine decides that a notification must be sent and to whom; a
transport delivers it. Delivery is fire-and-forget: the Notifier logs
failures and never lets them reach the state machine.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .errors import RetryableError
from .schema import Notification, NotificationSeverity

logger = logging.getLogger(__name__)


class NotificationError(RetryableError):
    """Notification could not be delivered."""


class NotificationTransport(ABC):
    """Abstract interface for notification delivery."""

    @abstractmethod
    def send(
        self,
        recipients: list[str],
        template: str,
        payload: dict[str, Any],
        severity: NotificationSeverity = NotificationSeverity.NORMAL,
    ) -> None:
        """
        Deliver a notification.

        Args:
            recipients: Reviewer ids, role tags or addresses
            template: Template name the receiving side renders
            payload: Template variables
            severity: Delivery urgency

        Raises:
            NotificationError: If delivery failed
        """
        pass

    def close(self) -> None:
        pass


class LoggingTransport(NotificationTransport):
    """Writes notifications to the log instead of delivering them."""

    def send(self, recipients, template, payload, severity=NotificationSeverity.NORMAL) -> None:
        logger.info(
            f"Notification [{severity.value}] {template} -> {', '.join(recipients)} "
            f"(session {payload.get('session_id', '-')})"
        )


class WebhookTransport(NotificationTransport):
    """Posts notifications as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        headers: Optional[dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            url: Webhook endpoint
            timeout_seconds: Per-request timeout
            headers: Extra request headers (e.g. authorization)
            client: Preconfigured client, mainly for tests
        """
        self.url = url
        self._client = client or httpx.Client(
            headers=headers or {},
            timeout=timeout_seconds,
        )

    def send(self, recipients, template, payload, severity=NotificationSeverity.NORMAL) -> None:
        body = {
            "recipients": recipients,
            "template": template,
            "severity": severity.value,
            "payload": payload,
        }
        try:
            response = self._client.post(self.url, json=body)
        except httpx.TimeoutException as e:
            raise NotificationError(f"Webhook timed out: {e}") from e
        except httpx.TransportError as e:
            raise NotificationError(f"Webhook unreachable: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"Webhook returned {response.status_code}: {response.text[:200]}"
            )

    def close(self) -> None:
        self._client.close()


class Notifier:
    """Delivers engine notifications, logging instead of raising on failure."""

    def __init__(self, transport: Optional[NotificationTransport] = None, enabled: bool = True):
        self.transport = transport or LoggingTransport()
        self.enabled = enabled

    def notify(self, notification: Notification) -> bool:
        """
        Send a notification.

        Returns:
            True if delivered, False if disabled, empty or failed
        """
        if not self.enabled or not notification.recipients:
            return False
        try:
            self.transport.send(
                notification.recipients,
                notification.template,
                notification.payload,
                notification.severity,
            )
            return True
        except Exception as e:
            logger.warning(
                f"Failed to send {notification.template} to {notification.recipients}: {e}"
            )
            return False

    def close(self) -> None:
        self.transport.close()
