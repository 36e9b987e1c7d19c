from __future__ import annotations

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatdesk.core.encryption import FernetKeyCipher, set_cipher
from chatdesk.providers.registry import registry
from chatdesk.storage import database
from chatdesk.storage.database import Base


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    """Provide an isolated in-memory database shared by every storage helper."""

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSession)

    yield

    engine.dispose()


@pytest.fixture(autouse=True)
def test_cipher():
    cipher = FernetKeyCipher(Fernet.generate_key().decode())
    set_cipher(cipher)
    yield cipher
    set_cipher(None)


@pytest.fixture(autouse=True)
def fresh_registry():
    registry.reset()
    yield
    registry.reset()
