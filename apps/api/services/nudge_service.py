"""
Nudge orchestration: load the attempt and its context, pre-filter rules by
cooldown, run the pure engine, then record one NudgeHit per selected nudge.

Composing is idempotent per attempt. A nudge already recorded for the same
(attempt, dedupe key) reuses its hit instead of inserting another, and the
rules behind those hits are exempt from cooldown for that attempt, so
re-fetching an attempt's nudges returns what was shown the first time.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import NotFoundError, SourceUnavailable
from models import NudgeHit as NudgeHitRecord
from models import NudgeRule as NudgeRuleRecord
from models import QuizAttempt, as_utc, utcnow
from services.nudge_engine import (
    AnswerRecord,
    AttemptView,
    AudienceContext,
    Nudge,
    NudgeRule,
    select_nudges,
)
from services.score_totals import normalize_totals
from services.signal_aggregator import DOMAIN_ALIASES, ARCHETYPE, archetype_context
from services.signal_store import SignalStore

logger = logging.getLogger(__name__)


def rule_from_record(row: NudgeRuleRecord) -> NudgeRule:
    return NudgeRule(
        id=row.id,
        scope=row.scope,
        trigger=row.trigger or {},
        copy_template=row.copy_template or {},
        audience=row.audience or {},
        priority=row.priority if row.priority is not None else 100,
        quiz_id=row.quiz_id,
        cooldown_days=row.cooldown_days or 0,
    )


def attempt_view(attempt: QuizAttempt) -> AttemptView:
    return AttemptView(
        id=str(attempt.id),
        quiz_id=attempt.quiz_id,
        result_key=attempt.result_key,
        totals=normalize_totals(attempt.quiz_id, attempt.result_totals),
    )


class NudgeHitStore:
    """Append-only nudge_hit writes and the lookups compose needs."""

    def __init__(self, db: Session):
        self.db = db

    def insert(
        self,
        owner_id: UUID,
        attempt: QuizAttempt,
        nudges: Sequence[Nudge],
        created_at: Optional[datetime] = None,
    ) -> List[NudgeHitRecord]:
        created_at = created_at or utcnow()
        hits = [
            NudgeHitRecord(
                owner_id=owner_id,
                rule_id=n.rule_id,
                quiz_id=attempt.quiz_id,
                attempt_id=attempt.id,
                dedupe_key=n.dedupe_key,
                created_at=created_at,
            )
            for n in nudges
        ]
        if not hits:
            return []
        self.db.add_all(hits)
        self.db.commit()
        return hits

    def for_attempt(self, attempt_id: UUID) -> Dict[str, NudgeHitRecord]:
        """Hits already recorded for an attempt, keyed by dedupe key (earliest wins)."""
        rows = (
            self.db.query(NudgeHitRecord)
            .filter(NudgeHitRecord.attempt_id == attempt_id)
            .order_by(NudgeHitRecord.created_at)
            .all()
        )
        existing: Dict[str, NudgeHitRecord] = {}
        for row in rows:
            existing.setdefault(row.dedupe_key, row)
        return existing

    def rules_in_cooldown(
        self,
        owner_id: UUID,
        rules: Sequence[NudgeRule],
        now: datetime,
        exempt: frozenset = frozenset(),
    ) -> set:
        """Ids of rules with a hit for this owner inside their cooldown window."""
        windows = {
            r.id: r.cooldown_days
            for r in rules
            if r.cooldown_days and r.cooldown_days > 0 and r.id not in exempt
        }
        if not windows:
            return set()
        oldest = now - timedelta(days=max(windows.values()))
        rows = (
            self.db.query(NudgeHitRecord.rule_id, NudgeHitRecord.created_at)
            .filter(
                NudgeHitRecord.owner_id == owner_id,
                NudgeHitRecord.rule_id.in_(list(windows)),
                NudgeHitRecord.created_at >= oldest,
            )
            .all()
        )
        blocked = set()
        for rule_id, created_at in rows:
            if as_utc(created_at) >= now - timedelta(days=windows[rule_id]):
                blocked.add(rule_id)
        return blocked


class NudgeService:
    def __init__(
        self,
        db: Session,
        macro_cap: Optional[int] = None,
        micro_cap: Optional[int] = None,
    ):
        self.db = db
        self.signals = SignalStore(db)
        self.hits = NudgeHitStore(db)
        self.macro_cap = settings.NUDGE_MACRO_CAP if macro_cap is None else macro_cap
        self.micro_cap = settings.NUDGE_MICRO_CAP if micro_cap is None else micro_cap

    def load_candidate_rules(self, quiz_id: str) -> Tuple[NudgeRule, ...]:
        try:
            rows = (
                self.db.query(NudgeRuleRecord)
                .filter(
                    NudgeRuleRecord.is_active.is_(True),
                    or_(NudgeRuleRecord.quiz_id.is_(None), NudgeRuleRecord.quiz_id == quiz_id),
                )
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Nudge rule read failed for quiz {quiz_id}: {e}")
            raise SourceUnavailable("Could not read nudge rules") from e
        return tuple(rule_from_record(r) for r in rows)

    def audience_for(self, owner_id: UUID) -> AudienceContext:
        latest = self.signals.list_attempts(owner_id, quiz_ids=DOMAIN_ALIASES[ARCHETYPE], limit=1)
        context = archetype_context(latest[0] if latest else None)
        return AudienceContext(role=context["role"], energy=context["energy"])

    def compose(self, owner_id: UUID, attempt_id: UUID, now: Optional[datetime] = None) -> List[Nudge]:
        now = as_utc(now) if now else utcnow()

        attempt = self.signals.get_attempt(attempt_id)
        if attempt is None or attempt.owner_id != owner_id:
            raise NotFoundError("Quiz attempt", str(attempt_id))

        answers = [
            AnswerRecord.from_answer(a.question_id, a.answer)
            for a in self.signals.list_answers(attempt.id)
        ]
        rules = self.load_candidate_rules(attempt.quiz_id)
        try:
            shown = self.hits.for_attempt(attempt.id)
            blocked = self.hits.rules_in_cooldown(
                owner_id, rules, now, exempt=frozenset(hit.rule_id for hit in shown.values())
            )
        except SQLAlchemyError as e:
            logger.error(f"Nudge hit read failed for {owner_id}: {e}")
            raise SourceUnavailable("Could not read nudge history") from e
        candidates = tuple(r for r in rules if r.id not in blocked)

        nudges = select_nudges(
            attempt_view(attempt),
            answers,
            self.audience_for(owner_id),
            candidates,
            macro_cap=self.macro_cap,
            micro_cap=self.micro_cap,
        )

        fresh = [n for n in nudges if n.dedupe_key not in shown]
        hits = self.hits.insert(owner_id, attempt, fresh, created_at=now)
        for nudge, hit in zip(fresh, hits):
            nudge.hit_id = str(hit.id)
        for nudge in nudges:
            if nudge.dedupe_key in shown:
                nudge.hit_id = str(shown[nudge.dedupe_key].id)

        logger.info(
            f"Composed {len(nudges)} nudge(s) for attempt {attempt_id} "
            f"({len(rules)} rules, {len(blocked)} in cooldown, {len(nudges) - len(fresh)} already shown)"
        )
        return nudges
