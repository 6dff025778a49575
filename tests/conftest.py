"""
Pytest configuration and shared fixtures.

Settings are read once at import time, so test environment variables are
set here before anything from inbox_service is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_inbox.db")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("PHONE_DEFAULT_COUNTRY_CODE", "966")
os.environ.setdefault("BULK_PAGE_DELAY_SECONDS", "0")
os.environ.setdefault("BULK_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from inbox_service.config import get_settings  # noqa: E402
get_settings.cache_clear()

from inbox_service import models  # noqa: E402,F401
from inbox_service.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Fresh tables and a session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Test client over a fresh database; runs the app lifespan."""
    from fastapi.testclient import TestClient
    from inbox_service.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def add_inbound(db):
    """Insert a webhook_messages row directly; returns it."""
    counter = {"n": 0}

    def _add(from_number: str, timestamp: int, text: str = "hi", status: str = "unread",
             from_name: str = None, replied: bool = False, message_id: str = None,
             created_at: str = "2025-01-01T00:00:00.000000Z"):
        counter["n"] += 1
        row = models.InboundMessage(
            message_id=message_id or f"wamid.in{counter['n']}",
            from_number=from_number,
            from_name=from_name,
            message_type="text",
            message_text=text,
            timestamp=timestamp,
            status=status,
            replied=replied,
            created_at=created_at,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _add


@pytest.fixture
def add_outbound(db):
    """Insert a message_history row directly; returns it."""

    def _add(to_number: str, created_at: str, text: str = None, template_name: str = None,
             status: str = "sent", message_id: str = None):
        row = models.OutboundMessage(
            message_id=message_id,
            to_number=to_number,
            message_text=text,
            template_name=template_name,
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _add
