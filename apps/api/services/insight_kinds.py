"""
Registry of insight kinds.

A kind bundles everything that differs between generated artifacts: the
payload schema, prompts, fallback composer, whether the bundle carries the
day (daily regeneration) and the schema/prompt versions that are folded
into the fingerprint.

Each kind also names the bundle sections it is written from. Only those
sections are signed and sent to the model, and check-in write times only
count as newer sources for kinds that read check-ins. Relationship insights
depend on quiz results alone, so a new mood check-in never regenerates them.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Type

from pydantic import BaseModel

from services.insight_fallback import (
    backfill_relationship_sources,
    compose_relationship_insights,
    compose_welcome_message,
)
from services.insight_payloads import RelationshipInsights, WelcomeMessage
from services.insight_prompts import (
    RELATIONSHIP_SYSTEM_PROMPT,
    WELCOME_SYSTEM_PROMPT,
    build_relationship_prompt,
    build_relationship_repair_prompt,
    build_welcome_prompt,
)
from services.signal_aggregator import CANONICAL_DOMAINS, SignalBundle

RELATIONSHIP_INSIGHTS = "relationship_insights"
WELCOME_MESSAGE = "welcome_message"

SUBSET_SECTIONS = CANONICAL_DOMAINS + ("weaving",)

QUIZ_SECTIONS = ("domains", "archetype")
ALL_SECTIONS = QUIZ_SECTIONS + ("checkins", "reflection_excerpt", "day")


@dataclass(frozen=True)
class InsightKind:
    name: str
    schema_version: int
    prompt_version: int
    payload_model: Type[BaseModel]
    system_prompt: str
    build_prompt: Callable[[Dict[str, Any]], str]
    compose_fallback: Callable[[Dict[str, Any]], Dict[str, Any]]
    # (reply, context) -> reply, applied before schema validation
    backfill: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]] = None
    # (partial reply, context) -> prompt for one completion retry
    build_repair_prompt: Optional[Callable[[Dict[str, Any], Dict[str, Any]], str]] = None
    signal_sections: Tuple[str, ...] = ALL_SECTIONS
    reads_checkins: bool = True
    daily: bool = False
    supports_subset: bool = False

    def fingerprint_input(self, bundle: SignalBundle) -> Dict[str, Any]:
        return {
            "kind": self.name,
            "schema_version": self.schema_version,
            "prompt_version": self.prompt_version,
            "signals": self.context(bundle),
        }

    def context(self, bundle: SignalBundle) -> Dict[str, Any]:
        return bundle.contributing(self.signal_sections)

    def newest_source_write_at(self, bundle: SignalBundle) -> Optional[datetime]:
        return bundle.newest_write_at(include_checkins=self.reads_checkins)

    def select(self, payload: Dict[str, Any], sections: Optional[Iterable[str]]) -> Dict[str, Any]:
        """Return only the requested sections. Full payload when no subset is asked for."""
        if not self.supports_subset or not sections:
            return payload
        wanted = set(sections)
        result = dict(payload)
        result["domains"] = {
            k: v for k, v in (payload.get("domains") or {}).items() if k in wanted
        }
        if "weaving" not in wanted:
            result.pop("weaving", None)
        result["inserts"] = [
            i for i in (payload.get("inserts") or []) if i.get("domain") in wanted
        ]
        return result


KINDS: Dict[str, InsightKind] = {
    RELATIONSHIP_INSIGHTS: InsightKind(
        name=RELATIONSHIP_INSIGHTS,
        schema_version=2,
        prompt_version=2,
        payload_model=RelationshipInsights,
        system_prompt=RELATIONSHIP_SYSTEM_PROMPT,
        build_prompt=build_relationship_prompt,
        compose_fallback=compose_relationship_insights,
        backfill=backfill_relationship_sources,
        build_repair_prompt=build_relationship_repair_prompt,
        signal_sections=QUIZ_SECTIONS,
        reads_checkins=False,
        supports_subset=True,
    ),
    WELCOME_MESSAGE: InsightKind(
        name=WELCOME_MESSAGE,
        schema_version=1,
        prompt_version=1,
        payload_model=WelcomeMessage,
        system_prompt=WELCOME_SYSTEM_PROMPT,
        build_prompt=build_welcome_prompt,
        compose_fallback=compose_welcome_message,
        daily=True,
    ),
}
