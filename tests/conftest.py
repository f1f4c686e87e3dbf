"""Shared test fixtures."""
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from exchangesync.models.entities import (  # noqa: F401
    Contact, Exchange, Expense, Invoice, Task, User,
)
from exchangesync.models.oauth import OAuthToken
from exchangesync.models.sync import SyncLog  # noqa: F401

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="stored_token")
def stored_token_fixture(test_session: Session) -> OAuthToken:
    """An active PP token valid for another 12 hours."""
    token = OAuthToken(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.utcnow() + timedelta(hours=12),
        created_at=datetime.utcnow() - timedelta(hours=12),
    )
    test_session.add(token)
    test_session.commit()
    test_session.refresh(token)
    return token
