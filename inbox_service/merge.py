"""
Folds the inbound and outbound logs into one summary per contact.

Inbound rows are applied first. The newest inbound message of a contact
always takes the "last message" slot; an outbound message only replaces it
when it is strictly newer. Unread counts and the replied flag accumulate over
every inbound row regardless of age.

Equal timestamps are ordered by row id, which makes the result independent
of the order the rows arrive in. A row id seen twice (a paged read that
shifted under concurrent inserts) counts once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from inbox_service.schemas import ConversationSummary, InboundRecord, OutboundRecord
from inbox_service.utils import normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class _Conversation:
    """Mutable accumulator used only while merging."""
    normalized_phone: str
    phone_number: str
    contact_name: str
    last_message_text: str
    last_message_time: datetime
    last_message_id: int
    last_message_is_outgoing: bool
    last_incoming_message_text: Optional[str] = None
    last_incoming_message_time: Optional[datetime] = None
    last_incoming_id: Optional[int] = None
    unread_count: int = 0
    is_read: bool = True
    has_replied: bool = False
    has_incoming_messages: bool = False

    def incoming_key(self) -> Optional[Tuple[datetime, int]]:
        if self.last_incoming_message_time is None:
            return None
        return (self.last_incoming_message_time, self.last_incoming_id)

    def to_summary(self) -> ConversationSummary:
        return ConversationSummary(
            normalized_phone=self.normalized_phone,
            phone_number=self.phone_number,
            contact_name=self.contact_name,
            last_message_text=self.last_message_text,
            last_message_time=self.last_message_time,
            last_message_is_outgoing=self.last_message_is_outgoing,
            last_incoming_message_text=self.last_incoming_message_text,
            last_incoming_message_time=self.last_incoming_message_time,
            unread_count=self.unread_count,
            is_read=self.is_read,
            has_replied=self.has_replied,
            has_incoming_messages=self.has_incoming_messages,
            updated_at=self.last_message_time,
        )


def _inbound_text(record: InboundRecord) -> str:
    return record.message_text or ""


def _outbound_text(record: OutboundRecord) -> str:
    return record.message_text or record.template_name or ""


def _apply_inbound(conversation: _Conversation, record: InboundRecord, time: datetime) -> None:
    """Make ``record`` the newest inbound (and latest overall) message."""
    text = _inbound_text(record)
    conversation.last_incoming_message_text = text
    conversation.last_incoming_message_time = time
    conversation.last_incoming_id = record.id
    conversation.last_message_text = text
    conversation.last_message_time = time
    conversation.last_message_id = record.id
    conversation.last_message_is_outgoing = False
    conversation.is_read = record.status == "read"
    conversation.phone_number = record.from_number
    conversation.contact_name = record.from_name or record.from_number


def _outbound_wins(conversation: _Conversation, record: OutboundRecord, time: datetime) -> bool:
    if time > conversation.last_message_time:
        return True
    # Ties between two outbound rows go to the higher id; inbound keeps a tie
    return (
        time == conversation.last_message_time
        and conversation.last_message_is_outgoing
        and record.id > conversation.last_message_id
    )


def merge(
    inbound: Iterable[InboundRecord],
    outbound: Iterable[OutboundRecord],
) -> Dict[str, ConversationSummary]:
    """
    Build conversation summaries keyed by normalized phone.

    Args:
        inbound: Rows of the inbound log, any order
        outbound: Rows of the outbound log, any order

    Returns:
        Mapping of normalized phone to ConversationSummary
    """
    conversations: Dict[str, _Conversation] = {}
    skipped = 0
    repeated = 0
    seen_inbound: Set[int] = set()
    seen_outbound: Set[int] = set()

    for record in inbound:
        if record.id in seen_inbound:
            repeated += 1
            continue
        seen_inbound.add(record.id)

        key = normalize_phone(record.from_number)
        if not key:
            skipped += 1
            continue

        time = record.message_time
        unread = record.status != "read"
        conversation = conversations.get(key)

        if conversation is None:
            conversation = _Conversation(
                normalized_phone=key,
                phone_number=record.from_number,
                contact_name=record.from_name or record.from_number,
                last_message_text="",
                last_message_time=time,
                last_message_id=record.id,
                last_message_is_outgoing=False,
                unread_count=1 if unread else 0,
                has_replied=record.replied,
                has_incoming_messages=True,
            )
            _apply_inbound(conversation, record, time)
            conversations[key] = conversation
            continue

        if (time, record.id) > conversation.incoming_key():
            _apply_inbound(conversation, record, time)
        if unread:
            conversation.unread_count += 1
        if record.replied:
            conversation.has_replied = True

    for record in outbound:
        if record.id in seen_outbound:
            repeated += 1
            continue
        seen_outbound.add(record.id)

        key = normalize_phone(record.to_number)
        if not key:
            skipped += 1
            continue

        time = record.message_time
        text = _outbound_text(record)
        conversation = conversations.get(key)

        if conversation is None:
            conversations[key] = _Conversation(
                normalized_phone=key,
                phone_number=record.to_number,
                contact_name=record.to_number,
                last_message_text=text,
                last_message_time=time,
                last_message_id=record.id,
                last_message_is_outgoing=True,
                unread_count=0,
                is_read=True,
                has_incoming_messages=False,
            )
            continue

        if _outbound_wins(conversation, record, time):
            conversation.last_message_text = text
            conversation.last_message_time = time
            conversation.last_message_id = record.id
            conversation.last_message_is_outgoing = True
            conversation.phone_number = record.to_number
            if not conversation.has_incoming_messages:
                conversation.contact_name = record.to_number

    if repeated:
        logger.debug(f"Merge ignored {repeated} rows already seen")
    if skipped:
        logger.debug(f"Merge skipped {skipped} rows without a usable phone number")

    return {key: conversation.to_summary() for key, conversation in conversations.items()}


def sort_conversations(conversations: Mapping[str, ConversationSummary]) -> List[ConversationSummary]:
    """
    Most urgent first.

    Contacts who wrote to us come before contacts we only wrote to, however
    recent the outbound message. Within each group the newest priority time
    comes first; ties go by normalized phone.
    """
    by_phone = sorted(conversations.values(), key=lambda c: c.normalized_phone)
    return sorted(by_phone, key=lambda c: (c.has_incoming_messages, c.priority_time), reverse=True)
