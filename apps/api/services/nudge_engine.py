"""
Nudge Rule Engine

Pure selection of nudges for one quiz attempt:

    select_nudges(attempt, answers, audience, rules) -> [Nudge]

Rules are an immutable input (a tuple), evaluated in (priority, id) order
with lower priority values first. For each rule:

  1. audience predicates (archetype role/energy, result key); any
     unsatisfied predicate skips the rule
  2. exactly one trigger kind, resolved in the order
     result_key -> any_of -> totals_diff
     An any_of trigger scans its configured pairs in order and the first
     pair with a matching stored answer wins. Answer order never decides,
     so when several pairs match, the dedupe key comes from the earliest
     configured pair, not from the earliest answer.
  3. a dedupe key computed only from scope, quiz and the trigger identity,
     so evaluating the same attempt twice yields the same keys
  4. {{name}} substitution into the copy; unknown names render as ""

Matches are deduplicated by key (first wins), partitioned by scope and cut
to the caps; macros come first, then micros.

Prior hits and cooldowns are not this module's concern: the caller filters
the candidate rules before handing them in.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from services.score_totals import max_min_keys, pick_totals, to_number

logger = logging.getLogger(__name__)

MACRO = "macro"
MICRO = "micro"
SCOPES = (MACRO, MICRO)

DEFAULT_MACRO_CAP = 2
DEFAULT_MICRO_CAP = 1

TRIGGER_RESULT_KEY = "result_key"
TRIGGER_ANY_OF = "any_of"
TRIGGER_TOTALS_DIFF = "totals_diff"

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NudgeRule:
    id: str
    scope: str
    trigger: Mapping[str, Any]
    copy_template: Mapping[str, Any] = field(default_factory=dict)
    audience: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 100
    quiz_id: Optional[str] = None
    cooldown_days: int = 0


@dataclass(frozen=True)
class AttemptView:
    id: str
    quiz_id: str
    result_key: Optional[str]
    totals: Mapping[str, float] = field(default_factory=dict)  # already normalized


@dataclass(frozen=True)
class AnswerRecord:
    question_id: str
    key: Optional[str] = None
    keys: Tuple[str, ...] = ()

    @classmethod
    def from_answer(cls, question_id: str, answer: Any) -> "AnswerRecord":
        answer = answer if isinstance(answer, Mapping) else {}
        keys = answer.get("keys")
        return cls(
            question_id=str(question_id),
            key=answer.get("key"),
            keys=tuple(str(k) for k in keys) if isinstance(keys, (list, tuple)) else (),
        )

    def has_option(self, option_key: str) -> bool:
        return self.key == option_key or option_key in self.keys


@dataclass(frozen=True)
class AudienceContext:
    role: Optional[str] = None
    energy: Optional[str] = None


@dataclass
class Nudge:
    rule_id: str
    scope: str
    priority: int
    dedupe_key: str
    title: str
    body: str
    cta: Optional[str]
    tips: List[str]
    hit_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "scope": self.scope,
            "priority": self.priority,
            "dedupe_key": self.dedupe_key,
            "title": self.title,
            "body": self.body,
            "cta": self.cta,
            "tips": list(self.tips),
            "hit_id": self.hit_id,
        }


@dataclass(frozen=True)
class TriggerMatch:
    dedupe_key: str
    variables: Mapping[str, Any]


# ---------------------------------------------------------------------------
# Templates & traits
# ---------------------------------------------------------------------------

def _template_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Single-pass {{name}} substitution. Never raises."""
    if not template:
        return ""
    return TEMPLATE_PATTERN.sub(
        lambda m: _template_value(variables.get(m.group(1))), str(template)
    )


def compute_traits(quiz_id: Optional[str], totals: Mapping[str, float]) -> Dict[str, bool]:
    """Trait flags for apology/forgiveness quizzes, from normalized totals."""
    slug = (quiz_id or "").lower()
    if "forgiv" not in slug and "apology" not in slug:
        return {}

    def s(key: str) -> float:
        return to_number(totals.get(key, 0))

    # "repair" was renamed to "accountability"; normalization has already folded it.
    repair = s("accountability")
    return {
        "fast_to_forgive": repair > s("time") and repair - s("time") >= 2,
        "needs_clear_ack": s("acknowledge") >= 3,
        "avoids_rehashing_conflict": s("avoid_conflict") >= 2 or s("time") > s("talk"),
        "prefers_action_over_words": s("actions_over_words") >= 2,
        "resents_if_rushed": s("time") - repair >= 2,
    }


def trait_list(traits: Mapping[str, bool]) -> str:
    return ", ".join(name.replace("_", " ") for name, on in traits.items() if on)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def audience_allows(rule: NudgeRule, attempt: AttemptView, audience: AudienceContext) -> bool:
    """Every declared predicate must hold; a missing value never satisfies one."""
    predicates = rule.audience or {}
    checks = (
        ("archetype_role_in", audience.role),
        ("archetype_energy_in", audience.energy),
        ("result_key_in", attempt.result_key),
    )
    for name, value in checks:
        allowed = predicates.get(name)
        if allowed is None:
            continue
        if not value or value not in allowed:
            return False
    return True


def trigger_kind(trigger: Mapping[str, Any]) -> Optional[str]:
    if trigger.get(TRIGGER_RESULT_KEY):
        return TRIGGER_RESULT_KEY
    if isinstance(trigger.get(TRIGGER_ANY_OF), (list, tuple)):
        return TRIGGER_ANY_OF
    diff = trigger.get(TRIGGER_TOTALS_DIFF)
    if isinstance(diff, Mapping) and diff.get("keys"):
        return TRIGGER_TOTALS_DIFF
    return None


def _match_result_key(rule: NudgeRule, attempt: AttemptView) -> Optional[TriggerMatch]:
    expected = rule.trigger[TRIGGER_RESULT_KEY]
    if attempt.result_key != expected:
        return None
    min_score = rule.trigger.get("min_score")
    if min_score is not None and to_number(attempt.totals.get(expected, 0)) < to_number(min_score):
        return None
    return TriggerMatch(
        dedupe_key=f"{rule.scope}:{attempt.quiz_id}:result:{expected}",
        variables={},
    )


def _match_any_of(rule: NudgeRule, attempt: AttemptView, answers: Sequence[AnswerRecord]) -> Optional[TriggerMatch]:
    by_question: Dict[str, List[AnswerRecord]] = {}
    for answer in answers:
        by_question.setdefault(answer.question_id, []).append(answer)

    # Configured order decides which pair wins, independent of answer order.
    for cond in rule.trigger[TRIGGER_ANY_OF]:
        if not isinstance(cond, Mapping):
            continue
        question_id = cond.get("question_id")
        option_key = cond.get("option_key")
        if not question_id or not option_key:
            continue
        if any(a.has_option(option_key) for a in by_question.get(question_id, ())):
            return TriggerMatch(
                dedupe_key=f"{rule.scope}:{attempt.quiz_id}:answer:{question_id}:{option_key}",
                variables={"question_id": question_id, "option_key": option_key},
            )
    return None


def _match_totals_diff(rule: NudgeRule, attempt: AttemptView) -> Optional[TriggerMatch]:
    config = rule.trigger[TRIGGER_TOTALS_DIFF]
    subset = pick_totals(attempt.totals, config["keys"])
    extremes = max_min_keys(subset)
    if extremes is None:
        return None
    top_key, top, low_key, low = extremes
    if not top - low > to_number(config.get("gt", 0)):
        return None
    return TriggerMatch(
        dedupe_key=f"{rule.scope}:{attempt.quiz_id}:tilt:{top_key}->{low_key}",
        variables={
            "top_key": top_key,
            "low_key": low_key,
            "top_score": top,
            "low_score": low,
        },
    )


def evaluate_trigger(
    rule: NudgeRule,
    attempt: AttemptView,
    answers: Sequence[AnswerRecord],
) -> Optional[TriggerMatch]:
    kind = trigger_kind(rule.trigger or {})
    if kind == TRIGGER_RESULT_KEY:
        return _match_result_key(rule, attempt)
    if kind == TRIGGER_ANY_OF:
        return _match_any_of(rule, attempt, answers)
    if kind == TRIGGER_TOTALS_DIFF:
        return _match_totals_diff(rule, attempt)
    logger.warning(f"Nudge rule {rule.id} has no recognized trigger")
    return None


def render_nudge(rule: NudgeRule, match: TriggerMatch, variables: Mapping[str, Any]) -> Nudge:
    copy = rule.copy_template or {}
    tips = copy.get("tips")
    return Nudge(
        rule_id=rule.id,
        scope=rule.scope,
        priority=rule.priority,
        dedupe_key=match.dedupe_key,
        title=render_template(copy.get("title"), variables),
        body=render_template(copy.get("body"), variables),
        cta=copy.get("cta") or None,
        tips=[render_template(t, variables) for t in tips] if isinstance(tips, (list, tuple)) else [],
    )


def select_nudges(
    attempt: AttemptView,
    answers: Sequence[AnswerRecord],
    audience: AudienceContext,
    rules: Sequence[NudgeRule],
    macro_cap: int = DEFAULT_MACRO_CAP,
    micro_cap: int = DEFAULT_MICRO_CAP,
) -> List[Nudge]:
    traits = compute_traits(attempt.quiz_id, attempt.totals)
    base_vars: Dict[str, Any] = {
        "result_key": attempt.result_key or "",
        "role": audience.role,
        "energy": audience.energy,
        **traits,
        "trait_list": trait_list(traits),
    }

    seen_keys = set()
    matched: Dict[str, List[Nudge]] = {MACRO: [], MICRO: []}

    for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
        if rule.scope not in SCOPES:
            logger.warning(f"Nudge rule {rule.id} has unknown scope {rule.scope!r}")
            continue
        if rule.quiz_id and rule.quiz_id != attempt.quiz_id:
            continue
        if not audience_allows(rule, attempt, audience):
            continue

        match = evaluate_trigger(rule, attempt, answers)
        if match is None or match.dedupe_key in seen_keys:
            continue
        seen_keys.add(match.dedupe_key)

        matched[rule.scope].append(render_nudge(rule, match, {**base_vars, **match.variables}))

    return matched[MACRO][:macro_cap] + matched[MICRO][:micro_cap]
