"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. Every test gets freshly
created tables and drops them afterwards, so nothing leaks between tests.
Redis is reported unavailable unless a test installs a FakeRedis.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["GOOGLE_AI_API_KEY"] = ""
os.environ["LOG_FORMAT"] = "text"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core.database import Base, SessionLocal, engine
from models import MoodCheckin, NudgeRule, QuizAnswer, QuizAttempt
from services import read_through_cache

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl

    def delete(self, *keys):
        for k in keys:
            self._store.pop(k, None)
            self._ttls.pop(k, None)

    def incr(self, key):
        val = int(self._store.get(key, 0)) + 1
        self._store[key] = str(val)
        return val

    def expire(self, key, ttl):
        self._ttls[key] = ttl

    def ttl(self, key):
        return self._ttls.get(key, -2)

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def _no_redis():
    with patch("core.cache.get_redis_client", return_value=None):
        yield


@pytest.fixture
def fake_redis():
    """Provide a FakeRedis and patch get_redis_client to return it."""
    r = FakeRedis()
    with patch("core.cache.get_redis_client", return_value=r):
        yield r


@pytest.fixture(autouse=True)
def _reset_read_through_slots():
    read_through_cache.clear_memory_tier()
    yield
    read_through_cache.clear_memory_tier()


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def owner_id():
    return uuid4()


@pytest.fixture
def make_attempt(db_session):
    def _make(owner_id, quiz_id, result_key=None, totals=None, completed_at=None, title=None):
        attempt = QuizAttempt(
            id=uuid4(),
            owner_id=owner_id,
            quiz_id=quiz_id,
            result_key=result_key,
            result_title=title,
            result_totals=totals or {},
            completed_at=completed_at or NOW - timedelta(days=1),
        )
        db_session.add(attempt)
        db_session.commit()
        return attempt
    return _make


@pytest.fixture
def make_answer(db_session):
    def _make(attempt, question_id, key=None, keys=None):
        answer = {"key": key} if key is not None else {"keys": list(keys or [])}
        row = QuizAnswer(id=uuid4(), attempt_id=attempt.id, question_id=question_id, answer=answer)
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def make_checkin(db_session):
    def _make(owner_id, created_at=None, mood=3, social_battery=3, need=None, love_language=None, reflection=None):
        row = MoodCheckin(
            id=uuid4(),
            owner_id=owner_id,
            mood=mood,
            social_battery=social_battery,
            need=need,
            love_language=love_language,
            reflection=reflection,
            created_at=created_at or NOW - timedelta(hours=2),
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def make_rule(db_session):
    def _make(rule_id, scope="macro", trigger=None, quiz_id=None, priority=100,
              audience=None, copy_template=None, cooldown_days=0, is_active=True):
        row = NudgeRule(
            id=rule_id,
            quiz_id=quiz_id,
            scope=scope,
            trigger=trigger or {},
            audience=audience or {},
            copy_template=copy_template or {"title": rule_id, "body": "", "tips": []},
            priority=priority,
            cooldown_days=cooldown_days,
            is_active=is_active,
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _make
