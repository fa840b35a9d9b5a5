"""
Canonical form + digest for signal bundles.

The digest is a pure function of the canonical JSON text: sorted keys,
compact separators, normalized numbers, UTC timestamps, sorted scalar
lists and capped strings. Two bundles that differ only in key insertion
order (or list order) hash identically, across processes and restarts.
"""
import hashlib
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional
from uuid import UUID

# Any single string longer than this is cut before hashing.
STRING_CAP = 2000
FLOAT_PLACES = 6


def _normalize_number(value: float) -> Any:
    if math.isnan(value) or math.isinf(value):
        return None
    rounded = round(value, FLOAT_PLACES)
    if rounded == int(rounded):
        return int(rounded)
    return rounded


def _sort_token(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonicalize(value: Any, exclude: Iterable[str] = ()) -> Any:
    """
    Return a JSON-compatible structure in canonical form.

    Keys named in ``exclude`` are dropped at every mapping level; use it only
    for fields that are explicitly non-contributing.
    """
    excluded = frozenset(exclude)
    return _canon(value, excluded)


def _canon(value: Any, excluded: frozenset) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return _canon(value.value, excluded)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return _normalize_number(float(value))
    if isinstance(value, str):
        return value[:STRING_CAP]
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {
            str(k): _canon(v, excluded)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if str(k) not in excluded
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canon(v, excluded) for v in value]
        # Collections are treated as sets of facts: order carries no meaning.
        return sorted(items, key=_sort_token)
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def canonical_json(value: Any, exclude: Iterable[str] = ()) -> str:
    return json.dumps(
        canonicalize(value, exclude),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fingerprint(bundle: Any, exclude: Iterable[str] = ()) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    raw = canonical_json(bundle, exclude)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def stable_key(name: str, body: Optional[Any] = None) -> str:
    """Deterministic cache key for a (name, request body) pair."""
    if body is None:
        return name
    return f"{name}:{canonical_json(body)}"
