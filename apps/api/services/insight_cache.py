"""
Insight Cache

One stored payload per (owner, kind), addressed by the fingerprint of the
bundle sections the kind reads. A stored payload is served only while
  - its fingerprint matches the current bundle,
  - the caller did not force regeneration, and
  - no source record the kind reads was written after it was stored.
The last check is coarse (one timestamp across the kind's sources): a
timestamp-only change that the canonical form ignores still regenerates.

Concurrent misses for the same (owner, kind) may both generate; the write
is an upsert, so the last writer wins and state stays consistent.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import GenerationUnavailable, SourceUnavailable
from models import InsightCacheRecord, as_utc, utcnow
from services.fingerprint import fingerprint
from services.insight_generator import InsightGenerator
from services.insight_kinds import InsightKind
from services.signal_aggregator import SignalBundle

logger = logging.getLogger(__name__)


def is_cache_valid(
    record_fingerprint: Optional[str],
    record_updated_at: Optional[datetime],
    digest: str,
    newest_source_write_at: Optional[datetime],
    force: bool = False,
) -> bool:
    """Pure validity check. ``newest_source_write_at=None`` means no sources."""
    if force or record_fingerprint is None or record_updated_at is None:
        return False
    if record_fingerprint != digest:
        return False
    if newest_source_write_at is None:
        return True
    return as_utc(newest_source_write_at) <= as_utc(record_updated_at)


@dataclass
class CachedInsight:
    owner_id: UUID
    kind: str
    fingerprint: str
    payload: Dict[str, Any]
    updated_at: datetime
    source_model: Optional[str] = None


@dataclass
class InsightResult:
    payload: Dict[str, Any]
    cached: bool
    fingerprint: str
    stale: bool = False
    persisted: bool = True
    source_model: Optional[str] = None
    updated_at: Optional[datetime] = None


class InsightCacheStore:
    """get/upsert against the insight_cache table."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, owner_id: UUID, kind: str) -> Optional[CachedInsight]:
        try:
            row = (
                self.db.query(InsightCacheRecord)
                .filter(InsightCacheRecord.owner_id == owner_id, InsightCacheRecord.kind == kind)
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"Insight cache read failed for {owner_id}/{kind}: {e}")
            raise SourceUnavailable("Could not read insight cache") from e
        if row is None:
            return None
        return CachedInsight(
            owner_id=row.owner_id,
            kind=row.kind,
            fingerprint=row.fingerprint,
            payload=row.payload,
            updated_at=as_utc(row.updated_at),
            source_model=row.source_model,
        )

    def upsert(self, record: CachedInsight) -> None:
        dialect = self.db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        values = {
            "owner_id": record.owner_id,
            "kind": record.kind,
            "fingerprint": record.fingerprint,
            "payload": record.payload,
            "source_model": record.source_model,
            "updated_at": record.updated_at,
        }
        stmt = insert(InsightCacheRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["owner_id", "kind"],
            set_={
                "fingerprint": stmt.excluded.fingerprint,
                "payload": stmt.excluded.payload,
                "source_model": stmt.excluded.source_model,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.db.execute(stmt)
        self.db.commit()


class InsightCache:
    def __init__(
        self,
        store: InsightCacheStore,
        generator: InsightGenerator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.generator = generator
        self.clock = clock

    def get_or_generate(
        self,
        owner_id: UUID,
        kind: InsightKind,
        bundle: SignalBundle,
        newest_source_write_at: Optional[datetime] = None,
        force: bool = False,
        sections: Optional[Iterable[str]] = None,
    ) -> InsightResult:
        digest = fingerprint(kind.fingerprint_input(bundle))
        if newest_source_write_at is None:
            newest_source_write_at = kind.newest_source_write_at(bundle)

        record = self.store.get(owner_id, kind.name)

        if record and is_cache_valid(
            record.fingerprint, record.updated_at, digest, newest_source_write_at, force
        ):
            logger.debug(f"Insight cache hit: {owner_id}/{kind.name}")
            return InsightResult(
                payload=kind.select(record.payload, sections),
                cached=True,
                fingerprint=digest,
                source_model=record.source_model,
                updated_at=record.updated_at,
            )

        reason = self._miss_reason(record, digest, newest_source_write_at, force)
        logger.info(
            f"Insight cache miss: {owner_id}/{kind.name} ({reason})",
            extra={"extra_fields": {"kind": kind.name, "miss_reason": reason}},
        )

        try:
            outcome = self.generator.generate(kind, kind.context(bundle))
        except Exception as e:
            # The fallback itself failed: a configuration error, not a provider hiccup.
            logger.error(f"Generation failed with no fallback for {owner_id}/{kind.name}: {e}", exc_info=True)
            if record is not None:
                return InsightResult(
                    payload=kind.select(record.payload, sections),
                    cached=True,
                    fingerprint=record.fingerprint,
                    stale=True,
                    source_model=record.source_model,
                    updated_at=record.updated_at,
                )
            raise GenerationUnavailable(f"No insight available for kind {kind.name}") from e

        now = self.clock()
        persisted = True
        try:
            self.store.upsert(
                CachedInsight(
                    owner_id=owner_id,
                    kind=kind.name,
                    fingerprint=digest,
                    payload=outcome.payload,
                    updated_at=now,
                    source_model=outcome.source_model,
                )
            )
        except SQLAlchemyError as e:
            self.store.db.rollback()
            persisted = False
            logger.warning(f"Insight cache write failed for {owner_id}/{kind.name}: {e}")

        return InsightResult(
            payload=kind.select(outcome.payload, sections),
            cached=False,
            fingerprint=digest,
            persisted=persisted,
            source_model=outcome.source_model,
            updated_at=now,
        )

    def peek(
        self,
        owner_id: UUID,
        kind: InsightKind,
        bundle: SignalBundle,
        newest_source_write_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Cache status without generating."""
        digest = fingerprint(kind.fingerprint_input(bundle))
        if newest_source_write_at is None:
            newest_source_write_at = kind.newest_source_write_at(bundle)
        record = self.store.get(owner_id, kind.name)

        if record is None:
            return {
                "has_record": False,
                "valid": False,
                "same_fingerprint": False,
                "sources_newer": False,
                "fingerprint": digest,
                "updated_at": None,
                "payload": None,
            }

        sources_newer = (
            newest_source_write_at is not None
            and as_utc(newest_source_write_at) > record.updated_at
        )
        return {
            "has_record": True,
            "valid": is_cache_valid(record.fingerprint, record.updated_at, digest, newest_source_write_at),
            "same_fingerprint": record.fingerprint == digest,
            "sources_newer": sources_newer,
            "fingerprint": digest,
            "updated_at": record.updated_at,
            "payload": record.payload,
        }

    @staticmethod
    def _miss_reason(
        record: Optional[CachedInsight],
        digest: str,
        newest_source_write_at: Optional[datetime],
        force: bool,
    ) -> str:
        if record is None:
            return "no_record"
        if force:
            return "forced"
        if record.fingerprint != digest:
            return "fingerprint_changed"
        return "sources_newer"
