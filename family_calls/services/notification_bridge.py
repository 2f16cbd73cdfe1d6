"""
Notification bridge.

Consumers of coordinator events (ringing UI, push notifications). Delivery
failures never affect call state; the session logs and moves on.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from httpx import AsyncClient, Response

from family_calls.models.call_state import CallNotification
from family_calls.utils.exceptions import NotificationException

logger = logging.getLogger(__name__)


class NotificationBridge(ABC):
    """Receives {event, call_id, counterpart_id} notifications."""

    @abstractmethod
    async def notify(self, notification: CallNotification) -> None:
        """Deliver one notification."""

    async def close(self) -> None:
        """Release resources."""


class LoggingNotificationBridge(NotificationBridge):
    """Default bridge: writes notifications to the log and keeps them."""

    def __init__(self):
        self.delivered: List[CallNotification] = []

    async def notify(self, notification: CallNotification) -> None:
        self.delivered.append(notification)
        logger.info(
            f"🔔 {notification.event} call={notification.call_id} "
            f"counterpart={notification.counterpart_name or notification.counterpart_id}"
        )


class WebhookNotificationBridge(NotificationBridge):
    """Posts notifications as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize webhook bridge.

        Args:
            url: Webhook endpoint
            timeout: Request timeout in seconds
            max_retries: Attempts per notification
            retry_delay: Initial backoff, doubled per attempt
            transport: Optional httpx transport (tests)
        """
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self.client: Optional[AsyncClient] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """Initialize HTTP client."""
        if not self.client:
            self.client = AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
            logger.info("Notification webhook client initialized")

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Notification webhook client closed")

    async def _post(self, payload: str) -> Response:
        """
        POST with retry on server and transport errors.

        Raises:
            NotificationException: On 4xx or after the last failed attempt
        """
        if not self.client:
            await self.connect()

        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(self.url, content=payload)

                if response.status_code < 400:
                    return response

                # Don't retry on client errors (4xx)
                if 400 <= response.status_code < 500:
                    raise NotificationException(
                        f"Webhook rejected notification: {response.status_code}",
                        status_code=response.status_code
                    )

                last_error = NotificationException(
                    f"Webhook server error: {response.status_code}",
                    status_code=response.status_code
                )
            except httpx.TransportError as e:
                last_error = NotificationException(f"Webhook transport error: {e}")

            if attempt < self.max_retries - 1:
                logger.warning(
                    f"Notification delivery failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        raise last_error

    async def notify(self, notification: CallNotification) -> None:
        await self._post(notification.model_dump_json())
        logger.debug(f"Delivered {notification.event} notification for {notification.call_id}")
