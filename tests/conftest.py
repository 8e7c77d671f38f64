"""
Pytest fixtures for stockbridge tests.

Each test gets its own in-memory SQLite database and fresh fake platform clients.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "ERROR"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stockbridge.config import Settings
from stockbridge.db import Base
from stockbridge.domain import SyncContext

from tests.fakes import FakePos, FakeStore


@pytest.fixture(scope="function")
def db_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        connection_id="test",
        store_url="https://shop.test",
        store_consumer_key="ck_test",
        store_consumer_secret="cs_test",
        pos_api_url="https://pos.test",
        pos_token="token",
        pos_location_id="7",
        lock_timeout=0.1,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pos():
    return FakePos()


@pytest.fixture
def ctx(settings, db_session, store, pos):
    return SyncContext(connection_id="test", settings=settings, session=db_session, store=store, pos=pos)
