"""
Insights API Router

POST /v1/insights returns the cached payload for (owner, kind) when the
signal fingerprint still matches and no source is newer; otherwise it
generates (model or fallback), stores and returns a fresh one.
"""
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import ValidationError
from services.insight_cache import InsightCache, InsightCacheStore
from services.insight_generator import InsightGenerator, build_gemini_client
from services.insight_kinds import KINDS, RELATIONSHIP_INSIGHTS, SUBSET_SECTIONS, InsightKind
from services.signal_aggregator import SignalAggregator
from services.signal_store import SignalStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/insights", tags=["Insights"])


class InsightRequest(BaseModel):
    owner_id: UUID
    kind: str = RELATIONSHIP_INSIGHTS
    domains: Optional[List[str]] = None
    force: bool = False


class InsightResponse(BaseModel):
    kind: str
    payload: Dict[str, Any]
    cached: bool
    stale: bool = False
    persisted: bool = True
    fingerprint: str
    source: Optional[str] = None
    updated_at: Optional[datetime] = None


class InsightStatusResponse(BaseModel):
    kind: str
    has_record: bool
    valid: bool
    same_fingerprint: bool
    sources_newer: bool
    fingerprint: str
    updated_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None


@lru_cache(maxsize=1)
def _gemini_client():
    return build_gemini_client()


def get_insight_generator() -> InsightGenerator:
    return InsightGenerator(client=_gemini_client())


def _resolve_kind(name: str) -> InsightKind:
    kind = KINDS.get(name)
    if kind is None:
        raise ValidationError(f"Unknown insight kind: {name}", field="kind")
    return kind


def _validate_sections(kind: InsightKind, domains: Optional[List[str]]) -> Optional[List[str]]:
    if not domains:
        return None
    if not kind.supports_subset:
        raise ValidationError(f"Kind {kind.name} does not support domain subsets", field="domains")
    unknown = sorted(set(domains) - set(SUBSET_SECTIONS))
    if unknown:
        raise ValidationError(f"Unknown domains: {', '.join(unknown)}", field="domains")
    return domains


@router.post("", response_model=InsightResponse)
def get_or_generate_insight(
    request: InsightRequest,
    db: Session = Depends(get_db),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    """
    Return insight text for an owner.

    ``force`` skips the cache check; ``domains`` trims the returned payload
    (the full payload is still generated and cached).
    """
    kind = _resolve_kind(request.kind)
    sections = _validate_sections(kind, request.domains)

    bundle = SignalAggregator(SignalStore(db)).collect(request.owner_id, include_day=kind.daily)
    cache = InsightCache(InsightCacheStore(db), generator)
    result = cache.get_or_generate(
        request.owner_id,
        kind,
        bundle,
        force=request.force,
        sections=sections,
    )

    return InsightResponse(
        kind=kind.name,
        payload=result.payload,
        cached=result.cached,
        stale=result.stale,
        persisted=result.persisted,
        fingerprint=result.fingerprint,
        source=result.source_model,
        updated_at=result.updated_at,
    )


@router.get("/{owner_id}/status", response_model=InsightStatusResponse)
def get_insight_status(
    owner_id: UUID,
    kind: str = Query(default=RELATIONSHIP_INSIGHTS),
    db: Session = Depends(get_db),
):
    """Whether the stored payload is still valid. Never generates."""
    insight_kind = _resolve_kind(kind)
    bundle = SignalAggregator(SignalStore(db)).collect(owner_id, include_day=insight_kind.daily)
    # The generator is never invoked by peek.
    cache = InsightCache(InsightCacheStore(db), generator=None)
    status = cache.peek(owner_id, insight_kind, bundle)
    return InsightStatusResponse(kind=insight_kind.name, **status)
