"""
HTTP client for the insight and nudge endpoints, plus read-through cache
helpers keyed by (endpoint, request body).
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

import requests

from core.config import settings
from services.fingerprint import stable_key
from services.read_through_cache import ReadThroughCache, RedisDurableTier

logger = logging.getLogger(__name__)

INSIGHTS_PATH = "/v1/insights"
NUDGES_PATH = "/v1/nudges"


class InsightsApiError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class InsightsApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout_s: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.INSIGHTS_API_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s if timeout_s is not None else settings.CLIENT_CACHE_TIMEOUT_MS / 1000

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        r = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        if r.status_code >= 400:
            try:
                detail = r.json().get("detail", r.text)
            except ValueError:
                detail = r.text
            raise InsightsApiError(r.status_code, str(detail))
        return r.json()

    def insights_body(
        self,
        owner_id: UUID,
        kind: str = "relationship_insights",
        domains: Optional[Iterable[str]] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"owner_id": str(owner_id), "kind": kind, "force": force}
        if domains:
            body["domains"] = sorted(domains)
        return body

    def get_insights(self, owner_id: UUID, kind: str = "relationship_insights", domains=None, force: bool = False) -> Dict[str, Any]:
        return self._request("POST", INSIGHTS_PATH, json=self.insights_body(owner_id, kind, domains, force))

    def get_insight_status(self, owner_id: UUID, kind: str = "relationship_insights") -> Dict[str, Any]:
        return self._request("GET", f"{INSIGHTS_PATH}/{owner_id}/status", params={"kind": kind})

    def compose_nudges(self, owner_id: UUID, attempt_id: UUID) -> Dict[str, Any]:
        return self._request(
            "POST",
            NUDGES_PATH,
            json={"owner_id": str(owner_id), "attempt_id": str(attempt_id)},
        )

    # ------------------------------------------------------------------
    # Read-through caches
    # ------------------------------------------------------------------

    def insights_cache(
        self,
        owner_id: UUID,
        kind: str = "relationship_insights",
        domains: Optional[Iterable[str]] = None,
        durable: Optional[RedisDurableTier] = None,
        **options,
    ) -> ReadThroughCache:
        body = self.insights_body(owner_id, kind, domains)

        async def fetcher():
            return await asyncio.to_thread(self._request, "POST", INSIGHTS_PATH, json=body)

        # force is a per-call flag, not part of the cached identity
        key_body = {k: v for k, v in body.items() if k != "force"}
        return ReadThroughCache(stable_key(INSIGHTS_PATH, key_body), fetcher, durable=durable, **options)

    def nudges_cache(
        self,
        owner_id: UUID,
        attempt_id: UUID,
        durable: Optional[RedisDurableTier] = None,
        **options,
    ) -> ReadThroughCache:
        body = {"owner_id": str(owner_id), "attempt_id": str(attempt_id)}

        # Revalidation re-posts, which is safe: the endpoint replays the nudges
        # already recorded for the attempt instead of recording new ones.
        async def fetcher():
            return await asyncio.to_thread(self._request, "POST", NUDGES_PATH, json=body)

        return ReadThroughCache(stable_key(NUDGES_PATH, body), fetcher, durable=durable, **options)
