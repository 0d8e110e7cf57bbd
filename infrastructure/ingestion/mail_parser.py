# infrastructure/ingestion/mail_parser.py
"""RFC 822 parsing into InboundMessage, converting HTML-only bodies to text."""
import email
import hashlib
import re
from datetime import timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import Dict, Optional, Union

import html2text

from domain.models.message import InboundMessage
from shared.clock import utc_now

KEPT_HEADERS = (
    "From", "To", "Cc", "Subject", "Date", "Message-ID", "In-Reply-To", "References",
    "Reply-To", "X-Priority", "Importance", "X-Triage-Tier",
)

_MESSAGE_ID = re.compile(r"<[^>]+>")

_html_converter = html2text.HTML2Text()
_html_converter.ignore_links = False
_html_converter.ignore_images = True
_html_converter.body_width = 0


def _decode(value: str) -> str:
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError):
        return value


def _part_text(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _extract_body(msg: Message) -> str:
    """Prefer text/plain; fall back to converted text/html"""
    plain_parts = []
    html_part: Optional[str] = None

    for part in msg.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_parts.append(_part_text(part))
        elif content_type == "text/html" and html_part is None:
            html_part = _part_text(part)

    if plain_parts:
        return "\n".join(p.strip() for p in plain_parts if p.strip())
    if html_part:
        return _html_converter.handle(html_part).strip()
    return ""


def _thread_id(headers: Dict[str, str], message_id: str) -> str:
    references = _MESSAGE_ID.findall(headers.get("References", ""))
    if references:
        return references[0]
    in_reply_to = _MESSAGE_ID.findall(headers.get("In-Reply-To", ""))
    if in_reply_to:
        return in_reply_to[0]
    return message_id


def _received_at(date_header: Optional[str]):
    if not date_header:
        return utc_now()
    try:
        parsed = parsedate_to_datetime(date_header)
    except (TypeError, ValueError):
        return utc_now()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_raw_email(raw: Union[bytes, str], organization_id: Optional[str] = None) -> InboundMessage:
    if isinstance(raw, bytes):
        msg = email.message_from_bytes(raw)
        digest_source = raw
    else:
        msg = email.message_from_string(raw)
        digest_source = raw.encode("utf-8", errors="replace")

    headers = {name: _decode(msg[name]) for name in KEPT_HEADERS if msg[name]}

    message_id = headers.get("Message-ID", "").strip()
    if not message_id:
        message_id = f"<sha256-{hashlib.sha256(digest_source).hexdigest()[:32]}@triage>"

    received_at = _received_at(headers.get("Date"))

    _, sender = parseaddr(headers.get("From", ""))

    return InboundMessage(
        message_id=message_id,
        sender=sender or headers.get("From", "unknown"),
        subject=headers.get("Subject", ""),
        body=_extract_body(msg),
        received_at=received_at,
        thread_id=_thread_id(headers, message_id),
        organization_id=organization_id,
        headers=headers,
    )


def priority_hint_from_headers(headers: Dict[str, str]) -> Optional[str]:
    """Map X-Priority / Importance headers onto a priority hint"""
    importance = headers.get("Importance", "").strip().lower()
    if importance == "high":
        return "high"
    if importance == "low":
        return "low"

    x_priority = headers.get("X-Priority", "").strip()
    if x_priority[:1].isdigit():
        level = int(x_priority[:1])
        if level <= 2:
            return "high"
        if level >= 4:
            return "low"
    return None
