"""
Tests for the bulk reader.

Tests cover:
- Paging until a short or empty page
- Row cap
- Exponential backoff on rate limiting, retried from the same offset
- Partial results when the retry budget runs out or on other errors
"""

import pytest

from inbox_service.bulk_reader import BulkReader
from inbox_service.storage import QueryResult, StoreError


class FakeQuery:
    def __init__(self, store):
        self._store = store
        self.offset = 0
        self.size = 0

    def select(self, columns):
        return self

    def order(self, column, ascending=True):
        return self

    def range(self, start, end):
        self.offset = start
        self.size = end - start + 1
        return self

    def execute(self):
        return self._store.respond(self.offset, self.size)


class FakeStore:
    """Serves ``total`` rows, failing the first calls listed in ``failures``."""

    def __init__(self, total, failures=None):
        self.total = total
        self.failures = list(failures or [])
        self.offsets = []

    def table(self, name):
        return FakeQuery(self)

    def respond(self, offset, size):
        self.offsets.append(offset)
        if self.failures:
            return QueryResult(error=self.failures.pop(0))
        end = min(offset + size, self.total)
        return QueryResult(rows=[{"id": i} for i in range(offset, end)])


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def rate_limited():
    return StoreError("database is locked", rate_limited=True)


def make_reader(store, sleep, **kwargs):
    options = {"page_size": 10, "page_delay": 0.5, "max_retries": 3, "retry_base_delay": 1.0}
    options.update(kwargs)
    return BulkReader(store, sleep=sleep, **options)


class TestPaging:
    """Test the page loop."""

    @pytest.mark.asyncio
    async def test_reads_until_short_page(self):
        """Test that every row is read and pages are spaced by page_delay."""
        store = FakeStore(total=25)
        sleep = RecordingSleep()

        fetch = await make_reader(store, sleep).fetch_all("t", ["id"], "id", max_rows=1000)

        assert fetch.complete
        assert [row["id"] for row in fetch.rows] == list(range(25))
        assert store.offsets == [0, 10, 20]
        assert sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_exact_multiple_ends_on_empty_page(self):
        store = FakeStore(total=20)

        fetch = await make_reader(store, RecordingSleep()).fetch_all("t", ["id"], "id", max_rows=1000)

        assert len(fetch.rows) == 20
        assert store.offsets == [0, 10, 20]

    @pytest.mark.asyncio
    async def test_row_cap(self):
        """Test that no more than max_rows rows are returned."""
        store = FakeStore(total=100)

        fetch = await make_reader(store, RecordingSleep()).fetch_all("t", ["id"], "id", max_rows=15)

        assert len(fetch.rows) == 15
        assert store.offsets == [0, 10]

    @pytest.mark.asyncio
    async def test_empty_table(self):
        fetch = await make_reader(FakeStore(total=0), RecordingSleep()).fetch_all("t", ["id"], "id")

        assert fetch.rows == []
        assert fetch.complete


class TestRetries:
    """Test behaviour under rate limiting and errors."""

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_resumes_same_offset(self):
        """Test exponential delays and that no page is skipped or repeated."""
        store = FakeStore(total=15, failures=[rate_limited(), rate_limited()])
        sleep = RecordingSleep()

        fetch = await make_reader(store, sleep, page_delay=0).fetch_all("t", ["id"], "id")

        assert fetch.complete
        assert fetch.retries == 2
        assert [row["id"] for row in fetch.rows] == list(range(15))
        assert sleep.delays[:2] == [1.0, 2.0]
        assert store.offsets[:3] == [0, 0, 0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_partial_rows(self):
        """Test that a persistently throttled read keeps what it already had."""
        store = FakeStore(total=30)
        sleep = RecordingSleep()
        reader = make_reader(store, sleep, page_delay=0, max_retries=2)

        original = store.respond

        def throttle_after_first_page(offset, size):
            if offset >= 10:
                store.offsets.append(offset)
                return QueryResult(error=rate_limited())
            return original(offset, size)

        store.respond = throttle_after_first_page

        fetch = await reader.fetch_all("t", ["id"], "id")

        assert not fetch.complete
        assert fetch.error.rate_limited
        assert fetch.retries == 2
        assert len(fetch.rows) == 10
        assert [delay for delay in sleep.delays if delay] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        store = FakeStore(total=30, failures=[StoreError("no such table")])
        sleep = RecordingSleep()

        fetch = await make_reader(store, sleep).fetch_all("t", ["id"], "id")

        assert fetch.rows == []
        assert fetch.error.message == "no such table"
        assert fetch.retries == 0
        assert sleep.delays == []


class GrowingStore(FakeStore):
    """Serves a newest-first table that gains rows while it is being read."""

    def __init__(self, ids):
        super().__init__(total=len(ids))
        self.table_rows = [{"id": i} for i in ids]

    def respond(self, offset, size):
        self.offsets.append(offset)
        return QueryResult(rows=self.table_rows[offset:offset + size])


class TestGrowingTable:
    """Test reads over a table that receives inserts between pages."""

    @pytest.mark.asyncio
    async def test_shifted_rows_are_not_repeated(self):
        """Test that a row pushed into the next page by an insert is kept once."""
        store = GrowingStore(ids=[5, 4, 3, 2, 1])
        inserted = []

        async def insert_during_pause(seconds):
            if not inserted:
                store.table_rows.insert(0, {"id": 100})
                inserted.append(100)

        reader = BulkReader(store, page_size=2, page_delay=0, sleep=insert_during_pause)

        fetch = await reader.fetch_all("t", ["id"], "id")

        ids = [row["id"] for row in fetch.rows]
        assert len(ids) == len(set(ids))
        assert set(ids) >= {5, 4, 3, 2, 1}
        assert fetch.complete
