"""
Tests for the conversation merge engine.

Tests cover:
- Phone spellings collapsing into one conversation
- Order independence of the merge
- Unread accumulation and is_read
- Outbound precedence rules
- Priority ordering of the final list
"""

import itertools
from datetime import datetime, timezone

from inbox_service.merge import merge, sort_conversations
from inbox_service.schemas import InboundRecord, OutboundRecord


def inbound(id, from_number, ts, status="unread", text=None, name=None, replied=False):
    return InboundRecord(
        id=id, from_number=from_number, timestamp=ts, status=status,
        message_text=text or f"in-{id}", from_name=name, replied=replied,
    )


def outbound(id, to_number, ts, text=None, template_name=None):
    created_at = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    return OutboundRecord(
        id=id, to_number=to_number, created_at=created_at,
        message_text=text, template_name=template_name,
    )


def dump(conversations):
    return {key: summary.model_dump() for key, summary in conversations.items()}


class TestMergeKeying:
    """Test how rows are grouped into conversations."""

    def test_local_and_international_spellings_merge(self):
        """Test the documented scenario of one contact stored two ways."""
        result = merge(
            [inbound(1, "0501234567", 100)],
            [outbound(1, "966501234567", 50)],
        )

        assert list(result) == ["966501234567"]
        summary = result["966501234567"]
        assert summary.unread_count == 1
        assert summary.has_incoming_messages is True
        assert summary.last_message_is_outgoing is False
        assert summary.phone_number == "0501234567"

    def test_rows_without_phone_are_skipped(self):
        result = merge([inbound(1, "", 100), inbound(2, "n/a", 100)], [outbound(1, "---", 100)])

        assert result == {}

    def test_outbound_only_contact(self):
        """Test that an outbound-only contact shows the raw recipient."""
        result = merge([], [outbound(1, "+966 50 000 0001", 100, template_name="welcome")])

        summary = result["966500000001"]
        assert summary.contact_name == "+966 50 000 0001"
        assert summary.phone_number == "+966 50 000 0001"
        assert summary.last_message_text == "welcome"
        assert summary.unread_count == 0
        assert summary.is_read is True
        assert summary.has_incoming_messages is False
        assert summary.last_incoming_message_time is None


class TestMergeDeterminism:
    """Test that input order never changes the result."""

    def test_any_permutation_gives_same_map(self):
        rows_in = [
            inbound(1, "966500000001", 100, status="read"),
            inbound(2, "0500000001", 300),
            inbound(3, "+966500000001", 300, status="read", name="Sara"),
            inbound(4, "966500000002", 200, replied=True),
        ]
        rows_out = [
            outbound(1, "966500000001", 400, text="late"),
            outbound(2, "0500000002", 150, text="early"),
            outbound(3, "966500000003", 400, text="a"),
            outbound(4, "966500000003", 400, text="b"),
        ]
        expected = dump(merge(rows_in, rows_out))

        for perm_in in itertools.permutations(rows_in):
            for perm_out in itertools.permutations(rows_out):
                assert dump(merge(perm_in, perm_out)) == expected

    def test_repeated_rows_count_once(self):
        """Test that a row delivered twice by a shifted page is merged once."""
        first = inbound(1, "966500000001", 100)
        second = inbound(2, "966500000001", 200)
        reply = outbound(1, "966500000002", 300, text="hi")

        result = merge([first, second, second], [reply, reply])

        assert result["966500000001"].unread_count == 2
        assert result == merge([first, second], [reply])

    def test_equal_inbound_times_break_on_id(self):
        result = merge(
            [inbound(7, "966500000001", 100, text="seven"), inbound(3, "966500000001", 100, text="three")],
            [],
        )

        assert result["966500000001"].last_incoming_message_text == "seven"


class TestUnreadAccumulation:
    """Test unread_count, is_read and has_replied."""

    def test_unread_unread_read(self):
        """Test that unread_count sums while is_read tracks the newest row."""
        rows = [
            inbound(1, "966500000001", 100),
            inbound(2, "966500000001", 200),
            inbound(3, "966500000001", 50, status="read"),
        ]

        for perm in itertools.permutations(rows):
            summary = merge(perm, [])["966500000001"]
            assert summary.unread_count == 2
            assert summary.is_read is False

    def test_newest_read_row_marks_conversation_read(self):
        rows = [inbound(1, "966500000001", 100), inbound(2, "966500000001", 200, status="read")]

        summary = merge(rows, [])["966500000001"]

        assert summary.unread_count == 1
        assert summary.is_read is True

    def test_has_replied_is_sticky(self):
        rows = [inbound(1, "966500000001", 100, replied=True), inbound(2, "966500000001", 200)]

        assert merge(rows, [])["966500000001"].has_replied is True


class TestOutboundPrecedence:
    """Test when an outbound message takes the last-message slot."""

    def test_newer_outbound_wins_last_message(self):
        summary = merge(
            [inbound(1, "966500000001", 100, name="Sara")],
            [outbound(1, "0500000001", 200, text="reply")],
        )["966500000001"]

        assert summary.last_message_text == "reply"
        assert summary.last_message_is_outgoing is True
        assert summary.contact_name == "Sara"
        assert summary.last_incoming_message_text == "in-1"

    def test_older_or_equal_outbound_does_not(self):
        summary = merge(
            [inbound(1, "966500000001", 200)],
            [outbound(1, "966500000001", 100), outbound(2, "966500000001", 200)],
        )["966500000001"]

        assert summary.last_message_is_outgoing is False
        assert summary.last_message_text == "in-1"


class TestSortConversations:
    """Test the order of the final list."""

    def test_inbound_contact_before_newer_outbound_only_contact(self):
        """Test that an unanswered contact outranks a newer outbound-only one."""
        conversations = merge(
            [inbound(1, "966500000001", 100)],
            [outbound(1, "966500000002", 500)],
        )

        ordered = sort_conversations(conversations)

        assert [c.normalized_phone for c in ordered] == ["966500000001", "966500000002"]

    def test_priority_uses_last_incoming_time(self):
        """Test that a newer reply does not lift a conversation above newer inbound activity."""
        conversations = merge(
            [inbound(1, "966500000001", 100), inbound(2, "966500000002", 200)],
            [outbound(1, "966500000001", 900)],
        )

        ordered = sort_conversations(conversations)

        assert [c.normalized_phone for c in ordered] == ["966500000002", "966500000001"]

    def test_ties_by_phone(self):
        conversations = merge(
            [inbound(1, "966500000009", 100), inbound(2, "966500000001", 100)],
            [],
        )

        ordered = sort_conversations(conversations)

        assert [c.normalized_phone for c in ordered] == ["966500000001", "966500000009"]
