"""
Prompt templates for insight generation.

Bump the matching PROMPT_VERSION in services.insight_kinds when a prompt
changes materially; the version is part of the fingerprint, so every cached
payload for that kind regenerates on next read.
"""
import json
from typing import Any, Dict


# ---------------------------------------------------------------------------
# relationship_insights
# ---------------------------------------------------------------------------

RELATIONSHIP_SYSTEM_PROMPT = """You write personalized relationship insight reports for a coaching app.
You weave the person's archetype pairing (Role × Energy) together with their quiz signals.

VOICE & STYLE
- Second-person voice. Concrete, invitational, never scolding.
- Each domain: strength, shadow, stress cue, micro-practice, partner script.
- Keep each field to 1-2 sentences. Partner scripts are 1-2 speakable sentences.
- Micro-practice duration is 5-12 minutes.
- No markdown anywhere.

RULES
- Reference the archetype pairing in every domain when it is known.
- If a domain signal is missing, give one short, safe suggestion. Never invent results.
- "stress" MUST start with "Under stress you might: ".
- Include "source" fields at archetype, each domain, and weaving.
- Provide 1-3 short personalized_notes.
- Return STRICT JSON only (one object). No prose outside JSON."""

RELATIONSHIP_SCHEMA_TEXT = """{
  "archetype": {"title": "string", "ribbon": "string", "source": "string"},
  "domains": {
    "giving": {
      "strength": "string",
      "shadow": "string",
      "stress": "string",
      "micro_practice": {"minutes": 5, "text": "string"},
      "partner_script": "string",
      "source": "string"
    },
    "receiving": "same fields as giving",
    "apology": "same fields as giving",
    "forgiveness": "same fields as giving",
    "attachment": "same fields as giving"
  },
  "weaving": {
    "principles": ["string"],
    "experiment_7day": ["string"],
    "notes": ["string"],
    "source": "string"
  },
  "inserts": [{"domain": "giving|receiving|apology|forgiveness|attachment", "text": "string"}],
  "personalized_notes": ["string"]
}"""


def build_relationship_prompt(context: Dict[str, Any]) -> str:
    return (
        "Generate relationship insights for all five domains.\n\n"
        f"ARCHETYPE\n{json.dumps(context.get('archetype') or {}, sort_keys=True)}\n\n"
        f"SIGNALS\n{json.dumps(context.get('domains') or {}, indent=2, sort_keys=True)}\n\n"
        "JSON SCHEMA (STRICT, all domains required)\n"
        f"{RELATIONSHIP_SCHEMA_TEXT}"
    )


def build_relationship_repair_prompt(partial: Dict[str, Any], context: Dict[str, Any]) -> str:
    return (
        "You responded with partial JSON. COMPLETE it to the required schema.\n"
        "- Keep the text that is present; fill every missing field in 1-2 sentences.\n"
        "- Anchor to the signals. If a signal is missing, use the archetype only. Never invent results.\n"
        "- Return ONLY the completed JSON object.\n\n"
        f"CONTEXT\n{json.dumps(context, sort_keys=True)}\n\n"
        f"YOUR PREVIOUS JSON\n{json.dumps(partial, sort_keys=True)}\n\n"
        "JSON SCHEMA (STRICT, all domains required)\n"
        f"{RELATIONSHIP_SCHEMA_TEXT}"
    )


# ---------------------------------------------------------------------------
# welcome_message
# ---------------------------------------------------------------------------

WELCOME_SYSTEM_PROMPT = """You write a 2 sentence (max 3) welcome and a single affirmation that makes the user feel cared for.
Rules:
- Keep it concrete and warm. Not a therapist.
- You may include ONE nudge: "breath" (variant "box" or "4-7-8") or "words". Otherwise "none".
- If their most recent mood is low (3 or below), prefer breath or words.
- Use their receiving love language to bias how you care for them.
- The affirmation is one sentence.

Return STRICT JSON:
{
  "welcome": {
    "greeting": "string",
    "lines": ["at most 3 short lines"],
    "nudge": {"kind": "breath|words|none", "variant": "box|4-7-8|null", "cta_label": "string|null"}
  },
  "affirmation": {"text": "one sentence", "tone": "warm|rooted|bright"}
}"""


def build_welcome_prompt(context: Dict[str, Any]) -> str:
    checkins = context.get("checkins") or {}
    summary = {
        "day": context.get("day"),
        "archetype": context.get("archetype"),
        "receiving_love_language": (context.get("domains") or {}).get("receiving"),
        "latest_mood": checkins.get("latest_mood"),
        "avg_mood": checkins.get("avg_mood"),
        "top_need": checkins.get("top_need"),
        "reflection_excerpt": context.get("reflection_excerpt"),
    }
    return json.dumps(summary, indent=2, sort_keys=True)
