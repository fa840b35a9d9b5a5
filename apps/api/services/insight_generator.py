"""
Generation Adapter

Calls Gemini with a schema-constrained prompt and validates the reply
against the kind's payload model. Every failure (no key, disabled by
config, provider error, timeout, empty or malformed JSON, schema
violation) routes to the kind's deterministic fallback composer, so
generate() always returns a payload of the same shape.

Before validation the kind may backfill fields it can derive itself (the
relationship "source" labels). A reply that still fails the schema gets one
repair call, for kinds that define a repair prompt, inside the same deadline.

Provider calls run in a single-worker thread pool and are abandoned once
GENERATION_TIMEOUT_S has elapsed since the first call; the HTTP client gets the same deadline so the
underlying request is cut off too.
"""
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Dict, Optional

from google import genai
from google.genai import types as genai_types
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from services.insight_kinds import InsightKind

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"


class GenerationFailed(Exception):
    """Primary path failed; reason is in the message."""


class IncompletePayload(GenerationFailed):
    """Reply parsed as a JSON object but failed the schema. Keeps the partial data."""

    def __init__(self, message: str, data: Dict[str, Any]):
        super().__init__(message)
        self.data = data


@dataclass
class GenerationOutcome:
    payload: Dict[str, Any]
    source_model: str
    used_fallback: bool
    error: Optional[str] = None
    latency_ms: int = 0


def build_gemini_client(api_key: Optional[str] = None, timeout_s: Optional[float] = None):
    """genai.Client with a transport timeout, or None when no key is configured."""
    key = api_key or settings.GOOGLE_AI_API_KEY
    if not key:
        return None
    timeout_ms = int((timeout_s or settings.GENERATION_TIMEOUT_S) * 1000)
    return genai.Client(
        api_key=key,
        http_options=genai_types.HttpOptions(timeout=timeout_ms),
    )


def parse_payload(kind: InsightKind, raw_text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Strict parse: one JSON object that validates against the kind's model."""
    if not raw_text or not raw_text.strip():
        raise GenerationFailed("empty response")
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise GenerationFailed(f"response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise GenerationFailed("response is not a JSON object")
    if kind.backfill is not None:
        data = kind.backfill(data, context or {})
    try:
        model = kind.payload_model.model_validate(data)
    except PydanticValidationError as e:
        raise IncompletePayload(f"response failed schema validation: {e.error_count()} error(s)", data) from e
    return model.model_dump(mode="json")


class InsightGenerator:
    """
    Usage:
        generator = InsightGenerator(client=build_gemini_client())
        outcome = generator.generate(kind, context)
    """

    def __init__(
        self,
        client=None,
        model: Optional[str] = None,
        timeout_s: Optional[float] = None,
        enabled: Optional[bool] = None,
    ):
        self.client = client
        self.model = model or settings.INSIGHT_MODEL
        self.timeout_s = timeout_s if timeout_s is not None else settings.GENERATION_TIMEOUT_S
        self.enabled = settings.GENERATION_ENABLED if enabled is None else enabled

    def generate(self, kind: InsightKind, context: Dict[str, Any]) -> GenerationOutcome:
        start = time.monotonic()

        if not self.enabled or self.client is None:
            reason = "generation disabled" if not self.enabled else "no Gemini client configured"
            logger.info(f"Using fallback for {kind.name}: {reason}")
            return self._fallback(kind, context, reason, start)

        try:
            payload = self._generate_validated(kind, context, start)
        except FuturesTimeout:
            reason = f"provider timeout ({self.timeout_s}s)"
            logger.warning(f"Gemini {kind.name} {reason}")
            return self._fallback(kind, context, reason, start)
        except GenerationFailed as e:
            logger.warning(f"Gemini {kind.name} output rejected: {e}")
            return self._fallback(kind, context, str(e), start)
        except Exception as e:
            logger.warning(f"Gemini {kind.name} call failed: {e}")
            return self._fallback(kind, context, f"provider error: {e}", start)

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Generated {kind.name} with {self.model} in {latency_ms}ms",
            extra={"extra_fields": {"kind": kind.name, "latency_ms": latency_ms}},
        )
        return GenerationOutcome(
            payload=payload,
            source_model=self.model,
            used_fallback=False,
            latency_ms=latency_ms,
        )

    def _fallback(self, kind: InsightKind, context: Dict[str, Any], reason: str, start: float) -> GenerationOutcome:
        # Fallback output goes through the same model so both paths share one shape.
        payload = kind.payload_model.model_validate(kind.compose_fallback(context)).model_dump(mode="json")
        return GenerationOutcome(
            payload=payload,
            source_model=FALLBACK_SOURCE,
            used_fallback=True,
            error=reason,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    def _generate_validated(self, kind: InsightKind, context: Dict[str, Any], start: float) -> Dict[str, Any]:
        raw_text = self._call_with_timeout(kind, kind.build_prompt(context), start)
        try:
            return parse_payload(kind, raw_text, context)
        except IncompletePayload as e:
            if kind.build_repair_prompt is None:
                raise
            logger.info(f"Repairing partial {kind.name} reply: {e}")
            partial = e.data

        repaired = self._call_with_timeout(kind, kind.build_repair_prompt(partial, context), start)
        try:
            return parse_payload(kind, repaired, context)
        except GenerationFailed as e:
            raise GenerationFailed(f"repair failed: {e}") from e

    def _call_with_timeout(self, kind: InsightKind, prompt: str, start: float) -> str:
        remaining = self.timeout_s - (time.monotonic() - start)
        if remaining <= 0:
            raise FuturesTimeout()
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(self._call_llm, kind, prompt)
        try:
            return future.result(timeout=remaining)
        except FuturesTimeout:
            future.cancel()
            raise
        finally:
            pool.shutdown(wait=False)

    def _call_llm(self, kind: InsightKind, user_prompt: str) -> str:
        contents = [
            genai_types.Content(
                role="user",
                parts=[genai_types.Part(text=user_prompt)],
            ),
        ]
        config = genai_types.GenerateContentConfig(
            system_instruction=kind.system_prompt,
            max_output_tokens=settings.GENERATION_MAX_TOKENS,
            temperature=settings.GENERATION_TEMPERATURE,
            response_mime_type="application/json",
        )

        response = self.client.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )

        text = ""
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                text = candidate.content.parts[0].text or ""
        return text
