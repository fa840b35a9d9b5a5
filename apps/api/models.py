from sqlalchemy import Column, Integer, Boolean, CheckConstraint, DateTime, ForeignKey, Text, JSON, Uuid, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from typing import Optional
from datetime import datetime, timezone

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to tz-aware UTC. SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuizAttempt(Base):
    """
    One completed quiz. Immutable: a retake creates a new row.

    result_totals is either flat ({"words": 4, "time": 2}) or dual-axis
    ({"role": {...}, "energy": {...}}); see services.score_totals.
    """
    __tablename__ = "quiz_attempt"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False)
    quiz_id = Column(Text, nullable=False)  # quiz slug, e.g. "apology-style"
    result_key = Column(Text, nullable=True)
    result_title = Column(Text, nullable=True)  # "Navigator × Sovereign" for the archetype quiz
    result_totals = Column(JSONType, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_quiz_attempt_owner_completed", "owner_id", "completed_at"),
    )


class QuizAnswer(Base):
    __tablename__ = "quiz_answer"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    attempt_id = Column(Uuid, ForeignKey("quiz_attempt.id"), nullable=False)
    question_id = Column(Text, nullable=False)
    # {"key": "a"} for single choice, {"keys": ["a", "c"]} for multi select
    answer = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_quiz_answer_attempt_id", "attempt_id"),
    )


class MoodCheckin(Base):
    __tablename__ = "mood_checkin"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False)
    mood = Column(Integer, nullable=True)  # 0-5
    social_battery = Column(Integer, nullable=True)  # 0-5
    need = Column(Text, nullable=True)
    love_language = Column(Text, nullable=True)
    reflection = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_mood_checkin_owner_created", "owner_id", "created_at"),
    )


class InsightCacheRecord(Base):
    """Last generated payload per (owner, kind). Overwritten on regeneration, never versioned."""
    __tablename__ = "insight_cache"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False)
    kind = Column(Text, nullable=False)
    fingerprint = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False)
    source_model = Column(Text, nullable=True)  # model name or "fallback"
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "kind", name="uq_insight_cache_owner_kind"),
    )


class NudgeRule(Base):
    """Static nudge configuration. Read-only to this service."""
    __tablename__ = "nudge_rule"

    id = Column(Text, primary_key=True)
    quiz_id = Column(Text, nullable=True)  # NULL matches any quiz
    scope = Column(Text, nullable=False)
    trigger = Column(JSONType, nullable=False)
    audience = Column(JSONType, nullable=False, default=dict)
    copy_template = Column(JSONType, nullable=False, default=dict)  # title, body, cta, tips[]
    priority = Column(Integer, nullable=False, default=100)  # lower sorts first
    cooldown_days = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("scope IN ('macro', 'micro')", name="ck_nudge_rule_scope"),
        Index("ix_nudge_rule_quiz_id", "quiz_id"),
    )


class NudgeHit(Base):
    """Append-only record of a nudge that was shown."""
    __tablename__ = "nudge_hit"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False)
    rule_id = Column(Text, ForeignKey("nudge_rule.id"), nullable=False)
    quiz_id = Column(Text, nullable=False)
    attempt_id = Column(Uuid, ForeignKey("quiz_attempt.id"), nullable=False)
    dedupe_key = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_nudge_hit_owner_rule_created", "owner_id", "rule_id", "created_at"),
    )
