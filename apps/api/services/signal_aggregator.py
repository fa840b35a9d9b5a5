"""
Signal Aggregator

Collapses a user's quiz attempts and recent mood check-ins into a
SignalBundle: the latest result per canonical domain, the archetype
(role × energy), check-in statistics over a trailing window and a capped
reflection excerpt.

build_bundle() is pure and order-independent: it sorts its inputs itself,
so the same records always produce the same canonical form no matter what
order the store returned them in. SignalAggregator wraps it with the reads.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from core.config import settings
from models import MoodCheckin, QuizAttempt, as_utc, utcnow
from services.fingerprint import canonicalize
from services.signal_store import SignalStore

logger = logging.getLogger(__name__)

CANONICAL_DOMAINS = ("giving", "receiving", "apology", "forgiveness", "attachment")
ARCHETYPE = "archetype"

# Quiz slugs have been renamed over time; every historical alias maps here.
DOMAIN_ALIASES: Dict[str, Tuple[str, ...]] = {
    ARCHETYPE: ("archetype-dual", "archetype_dual"),
    "receiving": ("love-language-receiving", "love_language_receiving", "love-language"),
    "giving": ("love-language-giving", "love_language_giving"),
    "apology": (
        "apology-style", "apology_language", "apology-language", "apology",
        "repair-style", "repair_apology",
    ),
    "forgiveness": (
        "forgiveness-language", "forgiveness_language", "forgiveness",
        "repair-forgiver", "repair_forgiver",
    ),
    "attachment": ("attachment-style", "attachment_style", "attachment"),
}

SLUG_TO_DOMAIN: Dict[str, str] = {
    slug: domain for domain, slugs in DOMAIN_ALIASES.items() for slug in slugs
}
ALL_SIGNAL_SLUGS: Tuple[str, ...] = tuple(sorted(SLUG_TO_DOMAIN))

ARCHETYPE_SEPARATOR = "×"

# Fields carried on the bundle that must never reach the digest.
NON_CONTRIBUTING_FIELDS = ("attempt_timestamps", "checkin_timestamps")


def domain_for_slug(quiz_id: Optional[str]) -> Optional[str]:
    if not quiz_id:
        return None
    return SLUG_TO_DOMAIN.get(quiz_id.strip().lower())


def split_archetype_title(title: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'Navigator × Sovereign' -> ('Navigator', 'Sovereign')."""
    if not title:
        return None, None
    parts = [p.strip() for p in title.split(ARCHETYPE_SEPARATOR)]
    role = parts[0] or None
    energy = (parts[1] or None) if len(parts) > 1 else None
    return role, energy


def truncate_excerpt(text: Optional[str], cap: int) -> Optional[str]:
    if not text:
        return None
    cleaned = " ".join(text.split())
    if not cleaned:
        return None
    return cleaned[:cap]


@dataclass(frozen=True)
class SignalBundle:
    domains: Dict[str, Optional[str]]
    archetype: Dict[str, Optional[str]]
    checkins: Dict[str, Any]
    reflection_excerpt: Optional[str] = None
    day: Optional[str] = None
    attempt_timestamps: Tuple[datetime, ...] = field(default_factory=tuple)
    checkin_timestamps: Tuple[datetime, ...] = field(default_factory=tuple)

    @property
    def source_timestamps(self) -> Tuple[datetime, ...]:
        return tuple(sorted(set(self.attempt_timestamps) | set(self.checkin_timestamps)))

    @property
    def newest_source_write_at(self) -> Optional[datetime]:
        return self.newest_write_at()

    def newest_write_at(self, include_checkins: bool = True) -> Optional[datetime]:
        stamps = self.source_timestamps if include_checkins else self.attempt_timestamps
        if not stamps:
            return None
        return max(stamps)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "domains": dict(self.domains),
            "archetype": dict(self.archetype),
            "checkins": dict(self.checkins),
            "reflection_excerpt": self.reflection_excerpt,
            "day": self.day,
            "attempt_timestamps": list(self.attempt_timestamps),
            "checkin_timestamps": list(self.checkin_timestamps),
        }

    def contributing(self, sections: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Canonical form of the fields that feed the fingerprint, limited to ``sections`` if given."""
        data = self.as_dict()
        for name in NON_CONTRIBUTING_FIELDS:
            data.pop(name, None)
        if sections is not None:
            wanted = set(sections)
            data = {k: v for k, v in data.items() if k in wanted}
        return canonicalize(data)

    def missing_domains(self) -> List[str]:
        return [d for d in CANONICAL_DOMAINS if not self.domains.get(d)]


def _attempt_sort_key(attempt: QuizAttempt):
    return (as_utc(attempt.completed_at), str(attempt.id))


def _checkin_sort_key(checkin: MoodCheckin):
    return (as_utc(checkin.created_at), str(checkin.id))


def latest_by_domain(attempts: Iterable[QuizAttempt]) -> Dict[str, QuizAttempt]:
    """Newest attempt per canonical domain (archetype included)."""
    latest: Dict[str, QuizAttempt] = {}
    for attempt in sorted(attempts, key=_attempt_sort_key, reverse=True):
        domain = domain_for_slug(attempt.quiz_id)
        if domain and domain not in latest:
            latest[domain] = attempt
    return latest


def archetype_context(attempt: Optional[QuizAttempt]) -> Dict[str, Optional[str]]:
    title = attempt.result_title if attempt else None
    role, energy = split_archetype_title(title)
    return {"title": title or None, "role": role, "energy": energy}


def _mode(values: Sequence[str]) -> Optional[str]:
    """Most frequent value; ties go to the one seen first (values are newest first)."""
    if not values:
        return None
    counts = Counter(values)
    best, best_n = None, -1
    for value in values:
        if counts[value] > best_n:
            best, best_n = value, counts[value]
    return best


def _average(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 1)


def aggregate_checkins(checkins: Sequence[MoodCheckin], window_days: int) -> Dict[str, Any]:
    """Window statistics. ``checkins`` must already be sorted newest first."""
    moods = [c.mood for c in checkins if c.mood is not None]
    batteries = [c.social_battery for c in checkins if c.social_battery is not None]
    needs = [c.need for c in checkins if c.need]
    love_needs = [c.love_language for c in checkins if c.love_language]
    return {
        "window_days": window_days,
        "count": len(checkins),
        "avg_mood": _average(moods),
        "avg_social_battery": _average(batteries),
        "top_need": _mode(needs),
        "top_love_language_need": _mode(love_needs),
        "latest_mood": moods[0] if moods else None,
    }


def build_bundle(
    attempts: Iterable[QuizAttempt],
    checkins: Iterable[MoodCheckin],
    now: datetime,
    window_days: int = 30,
    excerpt_cap: int = 160,
    day: Optional[date] = None,
) -> SignalBundle:
    now = as_utc(now)
    latest = latest_by_domain(attempts)

    window_start = now - timedelta(days=window_days)
    recent = sorted(
        (c for c in checkins if as_utc(c.created_at) >= window_start),
        key=_checkin_sort_key,
        reverse=True,
    )

    excerpt = None
    for checkin in recent:
        excerpt = truncate_excerpt(checkin.reflection, excerpt_cap)
        if excerpt:
            break

    return SignalBundle(
        domains={d: (latest[d].result_key if d in latest else None) for d in CANONICAL_DOMAINS},
        archetype=archetype_context(latest.get(ARCHETYPE)),
        checkins=aggregate_checkins(recent, window_days),
        reflection_excerpt=excerpt,
        day=day.isoformat() if day else None,
        attempt_timestamps=tuple(sorted({as_utc(a.completed_at) for a in latest.values()})),
        checkin_timestamps=tuple(sorted({as_utc(c.created_at) for c in recent})),
    )


class SignalAggregator:
    """Reads signal records for an owner and builds the bundle."""

    def __init__(self, store: SignalStore):
        self.store = store

    def collect(
        self,
        owner_id: UUID,
        now: Optional[datetime] = None,
        include_day: bool = False,
    ) -> SignalBundle:
        now = as_utc(now) if now else utcnow()
        window_days = settings.CHECKIN_WINDOW_DAYS

        attempts = self.store.list_attempts(
            owner_id,
            quiz_ids=ALL_SIGNAL_SLUGS,
            limit=settings.SIGNAL_ATTEMPT_LIMIT,
        )
        checkins = self.store.list_checkins(owner_id, since=now - timedelta(days=window_days))

        bundle = build_bundle(
            attempts,
            checkins,
            now=now,
            window_days=window_days,
            excerpt_cap=settings.EXCERPT_CAP,
            day=now.date() if include_day else None,
        )
        logger.debug(
            f"Signal bundle for {owner_id}: {len(attempts)} attempts, "
            f"{bundle.checkins['count']} check-ins, missing={bundle.missing_domains()}"
        )
        return bundle
