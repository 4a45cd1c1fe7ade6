from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.config import settings
from app.database import Base


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set LINE, Dify and admin credentials on the shared settings object."""
    monkeypatch.setattr(settings, "line_channel_secret", "test-channel-secret")
    monkeypatch.setattr(settings, "line_channel_access_token", "test-access-token")
    monkeypatch.setattr(settings, "dify_chat_api_key", "test-chat-key")
    monkeypatch.setattr(settings, "dify_knowledge_key", "test-knowledge-key")
    monkeypatch.setattr(settings, "dify_api_endpoint", "https://dify.test/v1")
    monkeypatch.setattr(settings, "admin_user", "admin")
    monkeypatch.setattr(settings, "admin_password", "s3cret")
    return settings


@pytest.fixture
def session_factory():
    """In-memory SQLite sessions sharing one connection across worker threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def sqlite_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
