"""
Shared fixtures. Settings are read at import time, so test env must be set before any
groupgate module is imported.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST")
os.environ.setdefault("TELEGRAM_BOT_USERNAME", "groupgate_test_bot")
os.environ.setdefault("STATE_SECRET", "test-state-secret")
os.environ.setdefault("PAYFAST_MERCHANT_ID", "10000100")
os.environ.setdefault("PAYFAST_MERCHANT_KEY", "46f0cd694581a")
os.environ.setdefault("PAYFAST_PASSPHRASE", "")
os.environ.setdefault("PAYFAST_VALIDATE_WITH_SERVER", "false")
os.environ.setdefault("PUBLIC_BASE_URL", "https://bot.example.com")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from groupgate.db.base import Base
import groupgate.models.group_policy  # noqa: F401  (register tables)
import groupgate.models.payment  # noqa: F401
import groupgate.models.user  # noqa: F401


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN; emit it ourselves so SAVEPOINT nests properly.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def engine():
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


class FakeRedis:
    """In-memory stand-in for the three redis calls StateStore makes."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def state_store(fake_redis):
    from groupgate.services.state import StateStore

    return StateStore(client=fake_redis)
