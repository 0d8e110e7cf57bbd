# application/services/ingestion.py
from typing import Optional, Union

from domain.models.message import InboundMessage
from domain.models.queue_state import Priority
from infrastructure.ingestion.mail_parser import parse_raw_email, priority_hint_from_headers
from infrastructure.storage.base import QueueStore
from shared.logging import logger


class IngestionService:
    """Entry point for inbound mail: normalizes the message and enqueues it"""

    def __init__(self, store: QueueStore, default_organization_id: Optional[str] = None):
        self.store = store
        self.default_organization_id = default_organization_id

    async def enqueue(self, raw_message: Union[InboundMessage, bytes, str],
                      priority_hint: Optional[str] = None,
                      organization_id: Optional[str] = None) -> str:
        """Store the message and return its queue item id (existing id on duplicates)"""
        if isinstance(raw_message, InboundMessage):
            message = raw_message
        elif isinstance(raw_message, (bytes, str)):
            message = parse_raw_email(raw_message, organization_id or self.default_organization_id)
            if priority_hint is None:
                priority_hint = priority_hint_from_headers(message.headers)
        else:
            raise TypeError(f"Unsupported inbound message type: {type(raw_message).__name__}")

        priority = Priority.from_hint(priority_hint)
        item = await self.store.enqueue(message, priority)

        logger.info("Message enqueued",
                    queue_item_id=item.id,
                    message_id=message.message_id,
                    priority=item.priority.value,
                    status=item.status.value)
        return item.id
