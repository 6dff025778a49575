import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generator, Iterable, Optional, Sequence, Tuple, Union

from sqlalchemy import create_engine, delete, func, inspect, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from inbox_service.config import settings
from inbox_service.utils import normalize_phone, utc_now_iso

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False because store calls run in the threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

INBOUND_TABLE = "webhook_messages"
OUTBOUND_TABLE = "message_history"

SUCCESSFUL_OUTBOUND_STATUSES = ("sent", "delivered", "read")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Register models with Base.metadata
        from inbox_service import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            backfill_normalized_phones(db)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def backfill_normalized_phones(db: Session) -> int:
    """
    Fill normalized_phone on rows written without it, e.g. by a sender
    that inserts through raw SQL.

    Returns:
        Number of rows updated
    """
    from inbox_service.models import InboundMessage, OutboundMessage

    updated = 0
    for model, number_column in ((InboundMessage, "from_number"), (OutboundMessage, "to_number")):
        for row in db.query(model).filter(model.normalized_phone.is_(None)).all():
            row.normalized_phone = normalize_phone(getattr(row, number_column))
            updated += 1
    db.commit()

    if updated:
        logger.info(f"Backfilled normalized_phone on {updated} rows")
    return updated


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check that the database is reachable and both message tables exist.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as connection:
            inspector = inspect(connection)
            for table_name in (INBOUND_TABLE, OUTBOUND_TABLE):
                if not inspector.has_table(table_name):
                    logger.error(f"Database schema not applied: '{table_name}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Store
# =============================================================================

# Substrings that mark a transient overload rather than a real failure
_RATE_LIMIT_MARKERS = (
    "database is locked",
    "database is busy",
    "too many requests",
    "too many connections",
    "rate limit",
    "429",
)
# SQLSTATE: too_many_connections, cannot_connect_now
_RATE_LIMIT_CODES = {"429", "53300", "57P03"}


class StoreError(Exception):
    """
    Failure reported by the record store.

    ``rate_limited`` is True when the caller should back off and retry.
    """

    def __init__(self, message: str, code: Optional[str] = None, rate_limited: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.rate_limited = rate_limited

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StoreError":
        orig = getattr(exc, "orig", None) or exc
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        message = str(orig)
        return cls(message, code=code, rate_limited=is_rate_limited(message, code))

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}" if self.code else self.message


def is_rate_limited(message: str, code: Optional[str] = None) -> bool:
    """Classify a store failure as a transient rate-limit signal."""
    if code and str(code) in _RATE_LIMIT_CODES:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


@dataclass
class QueryResult:
    """Outcome of TableQuery.execute(): rows, an error, and an optional count."""
    rows: list = field(default_factory=list)
    error: Optional[StoreError] = None
    count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TableQuery:
    """
    Fluent query against one table.

    Filters, ordering and paging compose in any order; nothing touches the
    database until execute(), which never raises for database failures and
    reports them through QueryResult.error instead.
    """

    def __init__(self, session_factory: Callable[[], Session], table_name: str):
        self._session_factory = session_factory
        self._table_name = table_name
        self._operation = "select"
        self._columns: Optional[Sequence[str]] = None
        self._count: Optional[str] = None
        self._head = False
        self._filters: list = []
        self._order: list = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._values: Any = None

    # -- projection / operation ------------------------------------------------

    def select(self, columns: Union[str, Sequence[str], None] = None,
               count: Optional[str] = None, head: bool = False) -> "TableQuery":
        self._operation = "select"
        if isinstance(columns, str):
            columns = None if columns.strip() == "*" else [c.strip() for c in columns.split(",")]
        self._columns = columns
        self._count = count
        self._head = head
        return self

    def insert(self, rows: Union[dict, Iterable[dict]]) -> "TableQuery":
        self._operation = "insert"
        self._values = [rows] if isinstance(rows, dict) else list(rows)
        return self

    def update(self, patch: dict) -> "TableQuery":
        self._operation = "update"
        self._values = dict(patch)
        return self

    def delete(self) -> "TableQuery":
        self._operation = "delete"
        return self

    # -- filters ---------------------------------------------------------------

    def _filter(self, op: str, column: str, value: Any = None) -> "TableQuery":
        self._filters.append((op, column, value))
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        return self._filter("eq", column, value)

    def neq(self, column: str, value: Any) -> "TableQuery":
        return self._filter("neq", column, value)

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        return self._filter("in", column, list(values))

    def gt(self, column: str, value: Any) -> "TableQuery":
        return self._filter("gt", column, value)

    def gte(self, column: str, value: Any) -> "TableQuery":
        return self._filter("gte", column, value)

    def lt(self, column: str, value: Any) -> "TableQuery":
        return self._filter("lt", column, value)

    def lte(self, column: str, value: Any) -> "TableQuery":
        return self._filter("lte", column, value)

    def is_null(self, column: str) -> "TableQuery":
        return self._filter("is_null", column)

    def not_null(self, column: str) -> "TableQuery":
        return self._filter("not_null", column)

    def or_(self, *filters: Tuple[str, str, Any]) -> "TableQuery":
        """
        Match rows satisfying any of the given filters, each written as
        ``(op, column, value)``, e.g. ``("in", "from_number", ["0501234567"])``.
        """
        self._filters.append(("or", None, [tuple(f) for f in filters]))
        return self

    # -- ordering / paging -----------------------------------------------------

    def order(self, column: str, ascending: bool = True) -> "TableQuery":
        self._order.append((column, ascending))
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Inclusive row range, e.g. range(0, 999) is the first 1000 rows."""
        self._offset = start
        self._limit = max(end - start + 1, 0)
        return self

    # -- execution -------------------------------------------------------------

    def _table(self):
        from inbox_service import models  # noqa: F401

        table = Base.metadata.tables.get(self._table_name)
        if table is None:
            raise StoreError(f"Unknown table: {self._table_name}", code="unknown_table")
        return table

    @staticmethod
    def _column(table, name: str):
        try:
            return table.c[name]
        except KeyError:
            raise StoreError(f"Unknown column {table.name}.{name}", code="unknown_column")

    def _condition(self, table, op: str, name: Optional[str], value: Any):
        if op == "or":
            return or_(*(self._condition(table, *inner) for inner in value))
        column = self._column(table, name)
        if op == "eq":
            return column == value
        if op == "neq":
            return column != value
        if op == "in":
            return column.in_(value)
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "is_null":
            return column.is_(None)
        if op == "not_null":
            return column.is_not(None)
        raise StoreError(f"Unknown filter: {op}", code="unknown_filter")

    def _conditions(self, table) -> list:
        return [self._condition(table, op, name, value) for op, name, value in self._filters]

    def _run_select(self, db: Session, table, conditions: list) -> QueryResult:
        count = None
        if self._count:
            count = db.execute(
                select(func.count()).select_from(table).where(*conditions)
            ).scalar_one()
        if self._head:
            return QueryResult(rows=[], count=count)

        columns = [self._column(table, name) for name in self._columns] if self._columns else [table]
        stmt = select(*columns).where(*conditions)
        for name, ascending in self._order:
            column = self._column(table, name)
            stmt = stmt.order_by(column.asc() if ascending else column.desc())
        if self._offset:
            stmt = stmt.offset(self._offset)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)

        rows = [dict(row) for row in db.execute(stmt).mappings()]
        return QueryResult(rows=rows, count=count)

    def execute(self) -> QueryResult:
        try:
            table = self._table()
            conditions = self._conditions(table)
            with self._session_factory() as db:
                if self._operation == "select":
                    return self._run_select(db, table, conditions)

                if self._operation == "insert":
                    if not self._values:
                        return QueryResult(rows=[], count=0)
                    db.execute(insert(table), self._values)
                    db.commit()
                    return QueryResult(rows=[], count=len(self._values))

                if self._operation == "update":
                    result = db.execute(update(table).where(*conditions).values(**self._values))
                    db.commit()
                    return QueryResult(rows=[], count=result.rowcount)

                if self._operation == "delete":
                    result = db.execute(delete(table).where(*conditions))
                    db.commit()
                    return QueryResult(rows=[], count=result.rowcount)

                return QueryResult(error=StoreError(f"Invalid operation: {self._operation}"))
        except StoreError as e:
            logger.error(f"Store query on {self._table_name} rejected: {e}")
            return QueryResult(error=e)
        except SQLAlchemyError as e:
            error = StoreError.from_exception(e)
            log = logger.warning if error.rate_limited else logger.error
            log(f"Store {self._operation} on {self._table_name} failed: {error}")
            return QueryResult(error=error)


class RecordStore:
    """Entry point of the fluent store: ``store.table(name).select(...)...execute()``."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def table(self, name: str) -> TableQuery:
        return TableQuery(self._session_factory, name)


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_inbound_message(
    db: Session,
    message_id: str,
    from_number: str,
    timestamp: int,
    from_name: Optional[str] = None,
    message_type: str = "text",
    message_text: Optional[str] = None,
    media_id: Optional[str] = None,
    media_mime_type: Optional[str] = None,
) -> Tuple[bool, bool]:
    """
    Store a message received through the webhook (idempotent on message_id).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created successfully
        - (True, True): Message already exists (webhook redelivery)
        - (False, False): Error occurred
    """
    from inbox_service.models import InboundMessage

    logger.info(f"Storing inbound message: id={message_id}, from={from_number}, type={message_type}")

    try:
        message = InboundMessage(
            message_id=message_id,
            from_number=from_number,
            from_name=from_name,
            message_type=message_type,
            message_text=message_text,
            media_id=media_id,
            media_mime_type=media_mime_type,
            timestamp=timestamp,
            status="unread",
            replied=False,
            created_at=utc_now_iso(),
        )
        db.add(message)
        db.commit()
        return (True, False)

    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate inbound message ignored: {message_id}")
        return (True, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store inbound message {message_id}: {e}")
        return (False, False)


def update_outbound_status(db: Session, message_id: str, status: str) -> int:
    """
    Apply a provider delivery-status callback to the outbound log.

    Returns:
        Number of rows updated (0 when the message is unknown)
    """
    from inbox_service.models import OutboundMessage

    updated = (
        db.query(OutboundMessage)
        .filter(OutboundMessage.message_id == message_id)
        .update({"status": status, "updated_at": utc_now_iso()}, synchronize_session=False)
    )
    db.commit()
    logger.info(f"Outbound status update: message_id={message_id}, status={status}, rows={updated}")
    return updated


def get_stats(db: Session) -> dict:
    """
    Totals across both message logs for the /stats endpoint.
    """
    from inbox_service.models import InboundMessage, OutboundMessage

    logger.info("Computing message statistics")

    total_incoming = db.query(func.count(InboundMessage.id)).scalar() or 0
    unread_incoming = (
        db.query(func.count(InboundMessage.id))
        .filter(InboundMessage.status == "unread")
        .scalar() or 0
    )
    senders_count = db.query(func.count(func.distinct(InboundMessage.from_number))).scalar() or 0

    total_outgoing = db.query(func.count(OutboundMessage.id)).scalar() or 0
    successful_outgoing = (
        db.query(func.count(OutboundMessage.id))
        .filter(OutboundMessage.status.in_(SUCCESSFUL_OUTBOUND_STATUSES))
        .scalar() or 0
    )
    failed_outgoing = (
        db.query(func.count(OutboundMessage.id))
        .filter(OutboundMessage.status == "failed")
        .scalar() or 0
    )
    templates_count = (
        db.query(func.count(func.distinct(OutboundMessage.template_name)))
        .filter(OutboundMessage.template_name.is_not(None))
        .scalar() or 0
    )

    top_senders = (
        db.query(
            InboundMessage.from_number,
            func.count(InboundMessage.id).label("count")
        )
        .group_by(InboundMessage.from_number)
        .order_by(func.count(InboundMessage.id).desc(), InboundMessage.from_number.asc())
        .limit(10)
        .all()
    )

    first_incoming_ts = db.query(func.min(InboundMessage.timestamp)).scalar()
    last_incoming_ts = db.query(func.max(InboundMessage.timestamp)).scalar()

    logger.debug(f"Stats computed: {total_incoming} incoming, {total_outgoing} outgoing")

    return {
        "total_incoming": total_incoming,
        "unread_incoming": unread_incoming,
        "senders_count": senders_count,
        "total_outgoing": total_outgoing,
        "successful_outgoing": successful_outgoing,
        "failed_outgoing": failed_outgoing,
        "templates_count": templates_count,
        "messages_per_sender": [
            {"from": row.from_number, "count": row.count} for row in top_senders
        ],
        "first_incoming_ts": first_incoming_ts,
        "last_incoming_ts": last_incoming_ts,
    }
