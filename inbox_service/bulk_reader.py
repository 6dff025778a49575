"""
Exhaustive, rate-limit tolerant reads of whole tables.

The conversation list is rebuilt from every row of both message logs. Those
tables grow without bound, so rows are pulled page by page (newest first),
with a pause between pages and a hard cap on the total, and a store that
answers "slow down" gets exponential backoff instead of a failed rebuild.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from inbox_service.config import settings
from inbox_service.metrics import record_bulk_fetch
from inbox_service.storage import QueryResult, RecordStore, StoreError

logger = logging.getLogger(__name__)


@dataclass
class BulkFetch:
    """
    Rows read from one table.

    ``error`` is set when the read stopped early; ``rows`` then holds
    whatever was accumulated before the failure.
    """
    table: str
    rows: list = field(default_factory=list)
    error: Optional[StoreError] = None
    retries: int = 0

    @property
    def complete(self) -> bool:
        return self.error is None


class BulkReader:
    """
    Pages through a table until it is exhausted or ``max_rows`` is reached.

    Safe to run concurrently for different tables; it keeps no state between
    calls. Store calls are synchronous and run in the threadpool.
    """

    def __init__(
        self,
        store: RecordStore,
        page_size: Optional[int] = None,
        page_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self.page_size = page_size or settings.BULK_PAGE_SIZE
        self.page_delay = settings.BULK_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_retries = settings.BULK_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.BULK_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )
        self._sleep = sleep

    async def _fetch_page(self, table: str, columns: Sequence[str], order_column: str,
                          offset: int) -> QueryResult:
        query = (
            self._store.table(table)
            .select(list(columns))
            .order(order_column, ascending=False)
            .range(offset, offset + self.page_size - 1)
        )
        return await run_in_threadpool(query.execute)

    async def fetch_all(
        self,
        table: str,
        columns: Sequence[str],
        order_column: str,
        max_rows: Optional[int] = None,
    ) -> BulkFetch:
        """
        Read every row of ``table``, newest ``order_column`` first.

        Stops on an empty or short page, or once ``max_rows`` rows are held.
        A rate-limited page is retried from the same offset after
        ``retry_base_delay * 2**n`` seconds, at most ``max_retries`` times per
        call. Any other error, or an exhausted retry budget, ends the read
        with the rows gathered so far; nothing is raised.

        Args:
            table: Table to read
            columns: Columns to project
            order_column: Column to order by, descending
            max_rows: Hard cap on rows returned (BULK_MAX_ROWS by default)

        Returns:
            BulkFetch with the rows and, for a partial read, the error
        """
        max_rows = settings.BULK_MAX_ROWS if max_rows is None else max_rows
        rows: list = []
        seen: set = set()
        repeated = 0
        offset = 0
        retries = 0

        logger.debug(f"Bulk fetch started: table={table}, page_size={self.page_size}, max_rows={max_rows}")

        while len(rows) < max_rows:
            if offset > 0:
                await self._sleep(self.page_delay)

            result = await self._fetch_page(table, columns, order_column, offset)

            if result.error is not None:
                error = result.error
                if error.rate_limited and retries < self.max_retries:
                    delay = self.retry_base_delay * (2 ** retries)
                    retries += 1
                    logger.warning(
                        f"Bulk fetch of {table} rate limited at offset {offset}, "
                        f"retry {retries}/{self.max_retries} in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    continue

                reason = "retry budget exhausted" if error.rate_limited else "store error"
                logger.error(
                    f"Bulk fetch of {table} aborted ({reason}) after {len(rows)} rows: {error}"
                )
                record_bulk_fetch(table, len(rows), retries)
                return BulkFetch(table=table, rows=rows, error=error, retries=retries)

            page = result.rows
            if not page:
                break

            for row in page:
                if len(rows) >= max_rows:
                    break
                row_id = row.get("id")
                if row_id is not None:
                    # Rows inserted since the previous page push already read rows into this one
                    if row_id in seen:
                        repeated += 1
                        continue
                    seen.add(row_id)
                rows.append(row)
            offset += len(page)

            if len(page) < self.page_size:
                break

        if len(rows) >= max_rows:
            logger.warning(f"Bulk fetch of {table} hit the row cap ({max_rows})")

        if repeated:
            logger.debug(f"Bulk fetch of {table} skipped {repeated} rows shifted across pages")
        logger.info(f"Bulk fetch of {table} finished: {len(rows)} rows, {retries} retries")
        record_bulk_fetch(table, len(rows), retries)
        return BulkFetch(table=table, rows=rows, retries=retries)
