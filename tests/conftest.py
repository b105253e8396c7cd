import os

# Settings are read at import time; these must be set before any marketplace import.
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/marketplace-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("CB_STORAGE", "memory")
os.environ.setdefault("GATEWAY_RETRY_BACKOFF_SECONDS", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fakes import (
    FakeGateway,
    FrozenClock,
    InMemoryListingService,
    InMemoryUserDirectory,
    RecordingNotifier,
)


@pytest.fixture(autouse=True)
def _reset_circuit_breakers():
    from marketplace.services import circuit_breaker

    circuit_breaker._breakers.clear()
    yield
    circuit_breaker._breakers.clear()


@pytest.fixture
def engine(tmp_path):
    from marketplace.db.base import Base
    from marketplace.models import reconciliation, subscription, transaction  # noqa: F401

    eng = create_engine(
        f"sqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def listings():
    return InMemoryListingService()


@pytest.fixture
def users():
    return InMemoryUserDirectory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()
