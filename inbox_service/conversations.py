"""
Read paths over the two message logs.

- load_conversations: bulk-reads both logs and merges them (cache loader)
- ConversationListService: paginated view of the cached conversation list
- ConversationThreadService: one contact's messages, straight from the store
"""

import asyncio
import csv
import io
import logging
from functools import partial
from typing import Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from inbox_service.bulk_reader import BulkReader
from inbox_service.cache import CacheResult, ConversationCache, ConversationLoader
from inbox_service.config import settings
from inbox_service.merge import merge, sort_conversations
from inbox_service.metrics import record_cache_outcome
from inbox_service.schemas import (
    ConversationListResponse,
    ConversationSummary,
    InboundRecord,
    OutboundRecord,
    ThreadMessage,
    ThreadResponse,
)
from inbox_service.storage import INBOUND_TABLE, OUTBOUND_TABLE, RecordStore
from inbox_service.utils import normalize_phone, phone_variants

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

# Columns the merge needs; the list rebuild reads nothing else
INBOUND_SUMMARY_COLUMNS = (
    "id", "from_number", "from_name", "message_text", "timestamp", "status", "replied", "created_at",
)
OUTBOUND_SUMMARY_COLUMNS = ("id", "to_number", "message_text", "template_name", "created_at")

INBOUND_THREAD_COLUMNS = (
    "id", "message_id", "from_number", "from_name", "message_type", "message_text",
    "media_id", "media_mime_type", "timestamp", "status", "replied", "reply_text",
    "reply_sent_at", "created_at",
)
OUTBOUND_THREAD_COLUMNS = (
    "id", "message_id", "to_number", "template_name", "message_text", "message_type",
    "status", "media_url", "created_at", "updated_at",
)


class ConversationRebuildError(Exception):
    """The conversation list could not be rebuilt from the store."""


def to_records(rows: Iterable[dict], model: Type[RecordT]) -> List[RecordT]:
    """Validate raw store rows, dropping (and logging) rows that do not fit."""
    records = []
    invalid = 0
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as e:
            invalid += 1
            logger.warning(f"Skipping malformed {model.__name__} row id={row.get('id')}: {e.error_count()} errors")
    if invalid:
        logger.warning(f"Dropped {invalid} malformed {model.__name__} rows")
    return records


# =============================================================================
# Conversation List
# =============================================================================

async def load_conversations(reader: BulkReader, max_rows: Optional[int] = None) -> List[ConversationSummary]:
    """
    Read both logs in full and return the sorted conversation list.

    A log that fails before yielding a single row means the store is
    unreachable and the rebuild fails. A log that fails part-way is used as
    far as it was read.
    """
    inbound_fetch, outbound_fetch = await asyncio.gather(
        reader.fetch_all(INBOUND_TABLE, INBOUND_SUMMARY_COLUMNS, "timestamp", max_rows),
        reader.fetch_all(OUTBOUND_TABLE, OUTBOUND_SUMMARY_COLUMNS, "created_at", max_rows),
    )

    for fetch in (inbound_fetch, outbound_fetch):
        if fetch.error is None:
            continue
        if not fetch.rows:
            raise ConversationRebuildError(f"{fetch.table} unavailable: {fetch.error}")
        logger.warning(f"Using partial read of {fetch.table} ({len(fetch.rows)} rows): {fetch.error}")

    inbound = to_records(inbound_fetch.rows, InboundRecord)
    outbound = to_records(outbound_fetch.rows, OutboundRecord)

    conversations = sort_conversations(merge(inbound, outbound))
    logger.debug(
        f"Merged {len(inbound)} inbound and {len(outbound)} outbound rows "
        f"into {len(conversations)} conversations"
    )
    return conversations


def build_conversation_loader(reader: BulkReader, max_rows: Optional[int] = None) -> ConversationLoader:
    return partial(load_conversations, reader, max_rows)


def paginate(result: CacheResult, limit: Optional[int], offset: int) -> ConversationListResponse:
    """
    Slice a cached list without touching it.

    No limit means "everything from offset on". Summaries are copied so
    callers cannot alter the cached entry.
    """
    data: Sequence[ConversationSummary] = result.conversations
    total = len(data)

    if limit is None:
        page = data[offset:]
        has_more = False
    else:
        page = data[offset:offset + limit]
        has_more = offset + len(page) < total

    return ConversationListResponse(
        conversations=[conversation.model_copy() for conversation in page],
        total=total,
        has_more=has_more,
        next_offset=offset + len(page) if has_more else None,
        loaded=len(page),
        from_cache=result.from_cache,
        stale=result.stale,
        error=result.error,
    )


class ConversationListService:
    """Paginated conversation list, always served through the cache."""

    def __init__(self, cache: ConversationCache, timeout_seconds: Optional[float] = None):
        self._cache = cache
        self.timeout_seconds = settings.REQUEST_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    async def list(self, limit: Optional[int] = None, offset: int = 0) -> ConversationListResponse:
        try:
            # Shielded so a slow rebuild still lands in the cache after we give up on it
            result = await asyncio.wait_for(asyncio.shield(self._cache.get()), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            record_cache_outcome("timeout")
            logger.warning(f"Conversation list not ready after {self.timeout_seconds}s, serving current entry")
            result = self._cache.peek(error="Conversation list rebuild timed out")

        return paginate(result, limit, offset)


# =============================================================================
# Conversation Thread
# =============================================================================

def incoming_message(record: InboundRecord) -> ThreadMessage:
    return ThreadMessage(
        id=record.id,
        type="incoming",
        timestamp=record.message_time,
        message_text=record.message_text or "",
        message_type=record.message_type,
        status=record.status,
        from_number=record.from_number,
        contact_name=record.from_name,
        replied=record.replied,
        reply_text=record.reply_text,
        media_id=record.media_id,
        media_mime_type=record.media_mime_type,
    )


def outgoing_message(record: OutboundRecord) -> ThreadMessage:
    return ThreadMessage(
        id=record.id,
        type="outgoing",
        timestamp=record.message_time,
        message_text=record.message_text or record.template_name or "",
        message_type=record.message_type,
        status=record.status,
        to_number=record.to_number,
        template_name=record.template_name,
        media_url=record.media_url,
    )


def sort_thread(messages: List[ThreadMessage]) -> List[ThreadMessage]:
    """Oldest first; at equal times incoming before outgoing, then by id."""
    return sorted(messages, key=lambda m: (m.timestamp, m.type == "outgoing", m.id))


class ConversationThreadService:
    """
    One contact's messages, read from the store on every call.

    Rows are matched on their normalized_phone column, the same key the
    conversation list groups by. Rows whose key was not filled in yet still
    match through the raw spellings of utils.phone_variants.
    """

    def __init__(self, store: RecordStore, cache: Optional[ConversationCache] = None):
        self._store = store
        self._cache = cache

    @staticmethod
    def _contact_filter(number_column: str, key: str, variants: List[str]) -> tuple:
        return ("eq", "normalized_phone", key), ("in", number_column, variants)

    def _inbound_query(self, key: str, variants: List[str], columns: Sequence[str], count: Optional[str] = None):
        return (
            self._store.table(INBOUND_TABLE)
            .select(list(columns), count=count)
            .or_(*self._contact_filter("from_number", key, variants))
            # Same key as InboundRecord.message_time: timestamp is never null in the table
            .order("timestamp")
            .order("id")
        )

    def _outbound_query(self, key: str, variants: List[str], columns: Sequence[str], count: Optional[str] = None):
        return (
            self._store.table(OUTBOUND_TABLE)
            .select(list(columns), count=count)
            .or_(*self._contact_filter("to_number", key, variants))
            .order("created_at")
            .order("id")
        )

    async def thread(self, phone: str, limit: int = 50, offset: int = 0) -> ThreadResponse:
        """
        Page through one contact's thread.

        Each direction gets its own count and its own [offset, offset+limit)
        window before the two are merged, so a page can hold up to 2*limit
        messages. If one direction fails, the other is still returned and
        ``error`` says what was missed.
        """
        key = normalize_phone(phone)
        if not key:
            return ThreadResponse(messages=[], total=0, has_more=False)

        variants = phone_variants(phone)
        end = offset + limit - 1
        inbound_query = self._inbound_query(key, variants, INBOUND_THREAD_COLUMNS, count="exact").range(offset, end)
        outbound_query = self._outbound_query(key, variants, OUTBOUND_THREAD_COLUMNS, count="exact").range(offset, end)

        inbound_result, outbound_result = await asyncio.gather(
            run_in_threadpool(inbound_query.execute),
            run_in_threadpool(outbound_query.execute),
        )

        messages: List[ThreadMessage] = []
        errors = []
        incoming_total = outgoing_total = 0

        if inbound_result.error is not None:
            errors.append(f"incoming messages unavailable: {inbound_result.error}")
        else:
            incoming_total = inbound_result.count or 0
            messages.extend(incoming_message(r) for r in to_records(inbound_result.rows, InboundRecord))

        if outbound_result.error is not None:
            errors.append(f"outgoing messages unavailable: {outbound_result.error}")
        else:
            outgoing_total = outbound_result.count or 0
            messages.extend(outgoing_message(r) for r in to_records(outbound_result.rows, OutboundRecord))

        if errors:
            logger.warning(f"Thread for {phone} is incomplete: {'; '.join(errors)}")

        total = incoming_total + outgoing_total
        return ThreadResponse(
            messages=sort_thread(messages),
            total=total,
            has_more=offset + limit < total,
            incoming_total=incoming_total,
            outgoing_total=outgoing_total,
            error="; ".join(errors) or None,
        )

    async def mark_read(self, phone: str) -> int:
        """
        Switch every unread inbound message of the contact to read.

        One UPDATE statement; calling it again changes nothing. Outbound rows
        are never touched.

        Raises:
            StoreError: if the update failed
        """
        key = normalize_phone(phone)
        if not key:
            return 0

        query = (
            self._store.table(INBOUND_TABLE)
            .update({"status": "read"})
            .or_(*self._contact_filter("from_number", key, phone_variants(phone)))
            .eq("status", "unread")
        )
        result = await run_in_threadpool(query.execute)
        if result.error is not None:
            raise result.error

        updated = result.count or 0
        logger.info(f"Marked {updated} messages read for {phone}")
        if updated and self._cache is not None:
            self._cache.invalidate()
        return updated

    async def export(self, phone: str) -> List[ThreadMessage]:
        """
        The whole thread, unpaginated, oldest first.

        Raises:
            StoreError: if either direction could not be read
        """
        key = normalize_phone(phone)
        if not key:
            return []
        variants = phone_variants(phone)

        inbound_result, outbound_result = await asyncio.gather(
            run_in_threadpool(self._inbound_query(key, variants, INBOUND_THREAD_COLUMNS).execute),
            run_in_threadpool(self._outbound_query(key, variants, OUTBOUND_THREAD_COLUMNS).execute),
        )
        for result in (inbound_result, outbound_result):
            if result.error is not None:
                raise result.error

        messages = [incoming_message(r) for r in to_records(inbound_result.rows, InboundRecord)]
        messages.extend(outgoing_message(r) for r in to_records(outbound_result.rows, OutboundRecord))
        return sort_thread(messages)


EXPORT_CSV_COLUMNS = ("timestamp", "direction", "phone", "name", "message_type", "status", "message_text")


def render_thread_csv(messages: Iterable[ThreadMessage]) -> str:
    """Thread as CSV, one message per row, header first."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_CSV_COLUMNS)
    for message in messages:
        incoming = message.type == "incoming"
        phone = message.from_number if incoming else message.to_number
        writer.writerow([
            message.timestamp.isoformat(),
            message.type,
            phone or "",
            (message.contact_name or phone or "") if incoming else (phone or ""),
            message.message_type or "",
            message.status or "",
            message.message_text,
        ])
    return buffer.getvalue()
