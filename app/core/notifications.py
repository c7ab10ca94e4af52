"""
Notifications for reimbursement transitions.

The workflow engine only enqueues; a background worker delivers with bounded retries,
so a slow or failing channel never blocks or fails a transition.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from fastapi import Request

from app.core.config import settings
from app.core.enums import NotificationEvent

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    recipient_id: UUID
    event: NotificationEvent
    request_id: UUID
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "recipient_id": str(self.recipient_id),
            "event": self.event.value,
            "request_id": str(self.request_id),
            "details": self.details,
        }


class NotificationSender:
    """Delivery channel. Raise on failure; the dispatcher decides whether to retry."""

    async def send(self, notification: Notification) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LoggingNotificationSender(NotificationSender):
    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notify %s: %s for request %s",
            notification.recipient_id,
            notification.event.value,
            notification.request_id,
        )


class WebhookNotificationSender(NotificationSender):
    """POST the notification as JSON to a configured endpoint."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, notification: Notification) -> None:
        response = await self._client.post(self.url, json=notification.to_payload())
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Queue plus a single worker task. notify() never blocks and never raises."""

    def __init__(
        self,
        sender: NotificationSender,
        max_attempts: int = 3,
        queue_size: int = 1000,
        retry_delay: float = 0.5,
    ) -> None:
        self.sender = sender
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.queue: "asyncio.Queue[Notification]" = asyncio.Queue(maxsize=queue_size)
        self.delivered = 0
        self.failed = 0
        self.dropped = 0
        self._worker: Optional[asyncio.Task] = None

    def notify(
        self,
        recipient_id: UUID,
        event: NotificationEvent,
        request_id: UUID,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        notification = Notification(recipient_id, event, request_id, details or {})
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full; dropping %s for request %s", event.value, request_id)

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("Notification worker started")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the worker."""
        if self._worker is None:
            return
        await self.queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        await self.sender.aclose()
        logger.info("Notification worker stopped (delivered=%s failed=%s dropped=%s)",
                    self.delivered, self.failed, self.dropped)

    async def _run(self) -> None:
        while True:
            notification = await self.queue.get()
            try:
                await self.deliver(notification)
            finally:
                self.queue.task_done()

    async def deliver(self, notification: Notification) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.sender.send(notification)
            except Exception:
                logger.exception(
                    "Notification %s for request %s failed (attempt %s/%s)",
                    notification.event.value,
                    notification.request_id,
                    attempt,
                    self.max_attempts,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue
            self.delivered += 1
            return True
        self.failed += 1
        return False


def get_notifier(request: Request) -> Optional[NotificationDispatcher]:
    """FastAPI dependency: the dispatcher started by the app lifespan, if any."""
    return getattr(request.app.state, "notifier", None)


def build_dispatcher() -> NotificationDispatcher:
    if settings.notification_webhook_url:
        sender: NotificationSender = WebhookNotificationSender(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    else:
        sender = LoggingNotificationSender()
    return NotificationDispatcher(
        sender,
        max_attempts=settings.notification_max_attempts,
        queue_size=settings.notification_queue_size,
    )
