# infrastructure/notifications/notifier.py
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import httpx

from domain.models.approval_workflow import NotificationEvent
from shared.clock import utc_now
from shared.logging import logger


class Notifier(ABC):
    """Fire-and-forget outbox: delivery failures are logged and never reach the caller"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        ...

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: NotificationEvent, payload: Dict[str, Any]):
        try:
            await self.send(event, payload)
        except Exception as e:
            logger.error("Notification delivery failed",
                         notification_event=event.value,
                         queue_item_id=payload.get("queue_item_id"),
                         error=str(e))

    async def drain(self):
        """Wait for in-flight deliveries"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        await self.drain()


class LoggingNotifier(Notifier):

    async def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        logger.info("Notification", notification_event=event.value, **payload)


class WebhookNotifier(Notifier):
    """POSTs each event as JSON to a configured URL"""

    def __init__(self, url: str, timeout_seconds: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        response = await self.client.post(self.url, json={
            "event": event.value,
            "sent_at": utc_now().isoformat(),
            "payload": payload,
        })
        response.raise_for_status()

    async def close(self):
        await super().close()
        await self.client.aclose()
