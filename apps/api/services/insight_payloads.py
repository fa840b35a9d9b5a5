"""
Payload schemas for generated insight text.

Model output and fallback output are validated against the same models,
so callers always see one structural shape regardless of which path
produced it. Every required string must be non-empty after stripping.
"""
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

DomainName = Literal["giving", "receiving", "apology", "forgiveness", "attachment"]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# relationship_insights
# ---------------------------------------------------------------------------

class MicroPractice(_Payload):
    minutes: int = Field(ge=1, le=60)
    text: NonEmptyStr


class DomainInsight(_Payload):
    strength: NonEmptyStr
    shadow: NonEmptyStr
    stress: NonEmptyStr
    micro_practice: MicroPractice
    partner_script: NonEmptyStr
    source: NonEmptyStr


class DomainInsights(_Payload):
    giving: DomainInsight
    receiving: DomainInsight
    apology: DomainInsight
    forgiveness: DomainInsight
    attachment: DomainInsight


class ArchetypeInsight(_Payload):
    title: NonEmptyStr
    ribbon: NonEmptyStr
    source: NonEmptyStr


class Weaving(_Payload):
    principles: List[NonEmptyStr] = Field(min_length=1)
    experiment_7day: List[NonEmptyStr] = Field(min_length=1)
    notes: List[NonEmptyStr] = Field(default_factory=list)
    source: NonEmptyStr


class Insert(_Payload):
    domain: DomainName
    text: NonEmptyStr


class RelationshipInsights(_Payload):
    archetype: ArchetypeInsight
    domains: DomainInsights
    weaving: Weaving
    inserts: List[Insert] = Field(default_factory=list)
    personalized_notes: List[NonEmptyStr] = Field(default_factory=list, max_length=3)


# ---------------------------------------------------------------------------
# welcome_message
# ---------------------------------------------------------------------------

class WelcomeNudge(_Payload):
    kind: Literal["breath", "words", "none"] = "none"
    variant: Optional[Literal["box", "4-7-8"]] = None
    cta_label: Optional[str] = None


class Welcome(_Payload):
    greeting: NonEmptyStr
    lines: List[NonEmptyStr] = Field(min_length=1, max_length=3)
    nudge: WelcomeNudge = Field(default_factory=WelcomeNudge)


class Affirmation(_Payload):
    text: NonEmptyStr
    tone: Literal["warm", "rooted", "bright"] = "warm"


class WelcomeMessage(_Payload):
    welcome: Welcome
    affirmation: Affirmation
