"""
Turns WhatsApp Business webhook payloads into inbound-log rows and
delivery-status updates.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from pydantic import ValidationError

from inbox_service.schemas import WebhookChangeValue, WebhookPayload, WhatsAppMessage, WhatsAppStatus

logger = logging.getLogger(__name__)

BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"
MEDIA_TYPES = ("image", "video", "document", "audio", "sticker")


@dataclass
class InboundMessageData:
    """Column values for one webhook_messages row."""
    message_id: str
    from_number: str
    timestamp: int
    from_name: Optional[str] = None
    message_type: str = "text"
    message_text: Optional[str] = None
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None


def _contact_name(value: WebhookChangeValue, wa_id: str) -> Optional[str]:
    """Profile name of the sender, matched by wa_id, else the first contact."""
    contacts = value.contacts
    if not contacts:
        return None
    contact = next((c for c in contacts if c.get("wa_id") == wa_id), contacts[0])
    return (contact.get("profile") or {}).get("name") or None


def _media_body(message: WhatsAppMessage) -> dict:
    # extra="allow" exposes types without a declared field (e.g. sticker) as attributes
    return getattr(message, message.type, None) or {}


def _text_and_type(message: WhatsAppMessage) -> Tuple[str, str]:
    if message.type == "text":
        return (message.text or {}).get("body") or "", "text"

    if message.type == "button":
        button = message.button or {}
        return button.get("text") or button.get("payload") or "", "button_reply"

    if message.type == "interactive":
        interactive = message.interactive or {}
        if interactive.get("button_reply"):
            reply = interactive["button_reply"]
            return reply.get("title") or reply.get("id") or "", "button_reply"
        if interactive.get("list_reply"):
            reply = interactive["list_reply"]
            return reply.get("title") or reply.get("description") or "", "list_reply"
        return "", "interactive"

    if message.type in MEDIA_TYPES:
        body = _media_body(message)
        return body.get("caption") or "", message.type

    return "", message.type


def _media(message: WhatsAppMessage) -> Tuple[Optional[str], Optional[str]]:
    if message.type not in MEDIA_TYPES:
        return None, None
    body = _media_body(message)
    return body.get("id"), body.get("mime_type")


def extract_message(message: WhatsAppMessage, value: WebhookChangeValue) -> InboundMessageData:
    """Column values for one provider message."""
    text, message_type = _text_and_type(message)
    media_id, media_mime_type = _media(message)
    return InboundMessageData(
        message_id=message.id,
        from_number=message.from_number,
        timestamp=message.timestamp,
        from_name=_contact_name(value, message.from_number),
        message_type=message_type,
        message_text=text,
        media_id=media_id,
        media_mime_type=media_mime_type,
    )


def _message_changes(payload: WebhookPayload) -> Iterator[WebhookChangeValue]:
    for entry in payload.entry:
        for change in entry.changes:
            if change.field == "messages":
                yield change.value


def parse_payload(payload: WebhookPayload) -> Tuple[List[InboundMessageData], List[WhatsAppStatus], int]:
    """
    Split a webhook body into new inbound messages and status callbacks.

    Payloads for other objects yield nothing. Individual malformed messages or
    statuses are skipped and counted.

    Returns:
        Tuple of (messages, statuses, invalid_count)
    """
    messages: List[InboundMessageData] = []
    statuses: List[WhatsAppStatus] = []
    invalid = 0

    if payload.object != BUSINESS_ACCOUNT_OBJECT:
        logger.info(f"Ignoring webhook for object '{payload.object}'")
        return messages, statuses, invalid

    for value in _message_changes(payload):
        for raw in value.messages:
            try:
                message = WhatsAppMessage.model_validate(raw)
            except ValidationError as e:
                invalid += 1
                logger.warning(f"Skipping malformed webhook message {raw.get('id')}: {e.error_count()} errors")
                continue
            messages.append(extract_message(message, value))

        for raw in value.statuses:
            try:
                statuses.append(WhatsAppStatus.model_validate(raw))
            except ValidationError as e:
                invalid += 1
                logger.warning(f"Skipping malformed status callback {raw.get('id')}: {e.error_count()} errors")

    return messages, statuses, invalid
