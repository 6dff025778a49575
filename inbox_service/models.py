"""
SQLAlchemy ORM models for the two message logs.

Both tables are append-only; only the columns noted below change after
a row is written. normalized_phone is derived from the raw number on insert
(see utils.normalize_phone) and is what thread lookups filter on.

For Pydantic request/response schemas and the typed records read back from
these tables, see schemas.py.
"""

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text

from inbox_service.storage import Base
from inbox_service.utils import normalize_phone


def _phone_key(column: str):
    """Column default deriving the join key from the raw number of the same row."""
    def default(context):
        return normalize_phone(context.get_current_parameters().get(column))
    return default


class InboundMessage(Base):
    """
    Message received from a contact through the WhatsApp webhook.

    Table: webhook_messages
    Unique: message_id (webhook redeliveries are ignored)
    Mutable: status, replied, reply_text, reply_sent_at
    """
    __tablename__ = "webhook_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True, index=True)
    from_number = Column(String, nullable=False, index=True)
    normalized_phone = Column(String, nullable=True, index=True, default=_phone_key("from_number"))
    from_name = Column(String, nullable=True)
    message_type = Column(String, nullable=False, default="text")
    message_text = Column(Text, nullable=True)
    media_id = Column(String, nullable=True)
    media_mime_type = Column(String, nullable=True)
    timestamp = Column(BigInteger, nullable=False, index=True)  # epoch seconds
    status = Column(String, nullable=False, default="unread", index=True)
    replied = Column(Boolean, nullable=False, default=False)
    reply_text = Column(Text, nullable=True)
    reply_sent_at = Column(String, nullable=True)  # ISO-8601 UTC
    created_at = Column(String, nullable=False)  # ISO-8601 UTC


class OutboundMessage(Base):
    """
    Message sent to a contact, recorded by the send pipeline.

    Table: message_history
    Mutable: status (provider delivery callbacks), updated_at
    """
    __tablename__ = "message_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=True, index=True)
    to_number = Column(String, nullable=False, index=True)
    normalized_phone = Column(String, nullable=True, index=True, default=_phone_key("to_number"))
    template_name = Column(String, nullable=True)
    message_text = Column(Text, nullable=True)
    message_type = Column(String, nullable=False, default="single")
    status = Column(String, nullable=False, default="sent", index=True)
    media_url = Column(Text, nullable=True)
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC
    updated_at = Column(String, nullable=True)
