"""
Read-only access to the signal records (quiz attempts, answers, check-ins).

Thin query layer: equality/range filters plus a row cap. Any database error
surfaces as SourceUnavailable; callers decide whether to retry.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import SourceUnavailable
from models import MoodCheckin, QuizAnswer, QuizAttempt

logger = logging.getLogger(__name__)


class SignalStore:
    def __init__(self, db: Session):
        self.db = db

    def _run(self, what: str, query):
        try:
            return query.all()
        except SQLAlchemyError as e:
            logger.error(f"Signal read failed ({what}): {e}")
            raise SourceUnavailable(f"Could not read {what}") from e

    def list_attempts(
        self,
        owner_id: UUID,
        quiz_ids: Optional[Sequence[str]] = None,
        limit: int = 200,
    ) -> List[QuizAttempt]:
        query = self.db.query(QuizAttempt).filter(QuizAttempt.owner_id == owner_id)
        if quiz_ids:
            query = query.filter(QuizAttempt.quiz_id.in_(list(quiz_ids)))
        query = query.order_by(QuizAttempt.completed_at.desc()).limit(limit)
        return self._run("quiz attempts", query)

    def list_checkins(
        self,
        owner_id: UUID,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[MoodCheckin]:
        query = self.db.query(MoodCheckin).filter(MoodCheckin.owner_id == owner_id)
        if since is not None:
            query = query.filter(MoodCheckin.created_at >= since)
        query = query.order_by(MoodCheckin.created_at.desc()).limit(limit)
        return self._run("mood check-ins", query)

    def get_attempt(self, attempt_id: UUID) -> Optional[QuizAttempt]:
        rows = self._run(
            "quiz attempt",
            self.db.query(QuizAttempt).filter(QuizAttempt.id == attempt_id).limit(1),
        )
        return rows[0] if rows else None

    def list_answers(self, attempt_id: UUID) -> List[QuizAnswer]:
        return self._run(
            "quiz answers",
            self.db.query(QuizAnswer).filter(QuizAnswer.attempt_id == attempt_id),
        )
