# domain/models/message.py
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from datetime import datetime


@dataclass(frozen=True)
class InboundMessage:
    """Immutable inbound customer email"""
    message_id: str
    sender: str
    subject: str
    body: str
    received_at: datetime
    thread_id: Optional[str] = None
    organization_id: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Subject and body joined for classification"""
        if self.subject and self.body:
            return f"{self.subject}\n\n{self.body}"
        return self.subject or self.body or ""


@dataclass(frozen=True)
class ConversationTurn:
    """Prior message in the same thread with its earlier assessment, if any"""
    text: str
    composite_score: Optional[float] = None
    received_at: Optional[datetime] = None


@dataclass(frozen=True)
class PreferenceSnapshot:
    """Immutable snapshot of org/user preferences, refreshed by the caller"""
    technical_terms: Tuple[str, ...] = ()
    external_indicators: Tuple[str, ...] = ()
    captured_at: Optional[datetime] = None
