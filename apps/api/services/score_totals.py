"""
Score totals normalization.

Quiz attempts store result_totals in one of two shapes:

    flat       {"words": 4, "time": 2}
    dual-axis  {"role": {"navigator": 5}, "energy": {"sovereign": 3}}

Everything downstream (imbalance triggers, trait flags, prompts) works on a
single flat map, so this module is the only place that branches on shape.
Dual-axis totals are flattened with axis-prefixed keys ("role.navigator") so
the two axes can never collide.
"""
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

DUAL_AXES = ("role", "energy")

# Legacy dimension keys renamed when the quizzes were revised. Old counts are
# folded into the new key rather than dropped.
LEGACY_KEY_MAPS: Dict[str, Dict[str, str]] = {
    "apology": {
        "verbal": "words",
        "responsibility": "accountability",
    },
    "forgiveness": {
        "repair": "accountability",
        "restitution": "amends",
        "gestures": "gesture",
    },
}


def to_number(value: Any) -> float:
    """Coerce a stored score to a number; junk becomes 0."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def quiz_family(quiz_id: Optional[str]) -> Optional[str]:
    """Legacy-map family for a quiz slug ("apology-style" -> "apology")."""
    if not quiz_id:
        return None
    slug = quiz_id.lower()
    if "apology" in slug:
        return "apology"
    if "forgiv" in slug:
        return "forgiveness"
    return None


def is_dual_axis(totals: Any) -> bool:
    return isinstance(totals, Mapping) and any(
        isinstance(totals.get(axis), Mapping) for axis in DUAL_AXES
    )


def remap_legacy_keys(quiz_id: Optional[str], totals: Mapping[str, float]) -> Dict[str, float]:
    mapping = LEGACY_KEY_MAPS.get(quiz_family(quiz_id) or "")
    result = dict(totals)
    if not mapping:
        return result
    for old_key, new_key in mapping.items():
        if old_key in result:
            result[new_key] = result.get(new_key, 0) + result.pop(old_key)
    return result


def normalize_totals(quiz_id: Optional[str], totals: Any) -> Dict[str, float]:
    """Flatten either totals shape into {dimension: number}."""
    if not isinstance(totals, Mapping):
        return {}

    flat: Dict[str, float] = {}
    if is_dual_axis(totals):
        for axis in DUAL_AXES:
            axis_totals = totals.get(axis) or {}
            if not isinstance(axis_totals, Mapping):
                continue
            for key, value in axis_totals.items():
                flat[f"{axis}.{key}"] = to_number(value)
        return flat

    for key, value in totals.items():
        flat[str(key)] = to_number(value)
    return remap_legacy_keys(quiz_id, flat)


def pick_totals(totals: Mapping[str, float], keys: Iterable[str]) -> Dict[str, float]:
    """Restrict totals to keys, in key order. Missing keys count as 0."""
    return {key: to_number(totals.get(key, 0)) for key in keys}


def max_min_keys(totals: Mapping[str, float]) -> Optional[Tuple[str, float, str, float]]:
    """
    (top_key, top_score, low_key, low_score) over totals, or None if empty.

    Strict comparisons: on ties the first key in iteration order wins.
    """
    top_key = low_key = None
    top = low = 0
    for key, value in totals.items():
        if top_key is None or value > top:
            top_key, top = key, value
        if low_key is None or value < low:
            low_key, low = key, value
    if top_key is None:
        return None
    return top_key, top, low_key, low
