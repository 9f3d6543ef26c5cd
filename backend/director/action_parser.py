"""
Action Parser - decodes Director JSON responses into ParsedAction records.

The Director's output schema has drifted over time:
1. Skill lives under "related_skill" (current) or "skill" (older)
2. Consequences come either as flat strings or as nested objects
3. Any field may be missing

Each drifting field is read through an ordered list of extraction
strategies; the first strategy whose key is present wins. A broken
element is dropped without aborting the rest of the batch.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.action import ParsedAction


logger = logging.getLogger(__name__)

# Literal the Director uses to mean "no change"
NONE_SENTINEL = "none"

# A strategy returns ParsedAction field updates, or None when its shape is absent
Strategy = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


@dataclass
class DecodeResult:
    """Result envelope for a Director decode."""

    success: bool
    actions: List[ParsedAction] = field(default_factory=list)
    error_message: Optional[str] = None
    dropped_indices: List[int] = field(default_factory=list)


def _get_string(obj: Dict[str, Any], key: str) -> Optional[str]:
    """
    Read a string property.

    Returns None when the key is absent and "" when it is null. Any other
    non-string value is structural damage and raises TypeError.
    """
    if key not in obj:
        return None
    value = obj[key]
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def _require_object(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise TypeError(f"'{name}' must be an object, got {type(value).__name__}")
    return value


def _meaningful(value: Optional[str]) -> Optional[str]:
    """Drop empty values and the "none" sentinel."""
    if not value or value == NONE_SENTINEL:
        return None
    return value


# --- Skill ---------------------------------------------------------------


def _skill_from(key: str) -> Strategy:
    def strategy(element: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        value = _get_string(element, key)
        if value is None:
            return None
        return {"skill": value}

    strategy.__name__ = f"skill_from_{key}"
    return strategy


# --- Success consequences ------------------------------------------------


def flat_success_consequence(element: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    value = _get_string(element, "success_consequence")
    if value is None:
        return None
    return {"success_consequence": value}


def nested_success_consequences(element: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "success_consequences" not in element:
        return None
    success = _require_object(element["success_consequences"], "success_consequences")

    updates: Dict[str, Any] = {}

    description = _get_string(success, "description")
    if description is not None:
        updates["success_consequence"] = description

    if "state_changes" in success:
        changes = _require_object(success["state_changes"], "state_changes")
        category = _get_string(changes, "category")
        new_state = _get_string(changes, "new_state")
        if _meaningful(category) and _meaningful(new_state):
            updates["success_state_changes"] = {category: new_state}

    sublocation = _meaningful(_get_string(success, "sublocation_change"))
    if sublocation:
        updates["success_sublocation_change"] = sublocation

    # Schema yields one value; stored as a list for multi-value variants
    item = _meaningful(_get_string(success, "item_gained"))
    if item:
        updates["success_items_gained"] = [item]

    companion = _meaningful(_get_string(success, "companion_gained"))
    if companion:
        updates["success_companions_gained"] = [companion]

    return updates


# --- Failure consequences ------------------------------------------------


def flat_failure_consequence(element: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    value = _get_string(element, "failure_consequence")
    if value is None:
        return None
    # Flat form carries no separate type, so the description doubles as one
    return {"failure_consequence": value, "failure_type": value}


def nested_failure_consequences(element: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "failure_consequences" not in element:
        return None
    failure = _require_object(element["failure_consequences"], "failure_consequences")

    failure_type = _get_string(failure, "type") or ""
    description = _get_string(failure, "description") or ""

    if not description and failure_type:
        description = f"Your action failed: {failure_type}"

    return {"failure_type": failure_type, "failure_consequence": description}


SKILL_STRATEGIES: List[Strategy] = [_skill_from("related_skill"), _skill_from("skill")]
SUCCESS_STRATEGIES: List[Strategy] = [
    flat_success_consequence,
    nested_success_consequences,
]
FAILURE_STRATEGIES: List[Strategy] = [
    flat_failure_consequence,
    nested_failure_consequences,
]

# Plain fields with a single known key
SIMPLE_FIELDS: Tuple[str, ...] = ("action_text", "difficulty", "risk")

FALLBACK_CHAINS: List[List[Strategy]] = [
    SKILL_STRATEGIES,
    SUCCESS_STRATEGIES,
    FAILURE_STRATEGIES,
]


def first_match(strategies: List[Strategy], element: Dict[str, Any]) -> Dict[str, Any]:
    """Apply strategies in priority order and return the first match's updates."""
    for strategy in strategies:
        updates = strategy(element)
        if updates is not None:
            return updates
    return {}


def parse_single_action(element: Any, index: int) -> ParsedAction:
    """
    Decode one element of the "actions" array.

    Raises on structural damage (non-object element, non-string field);
    the caller decides whether to drop it.
    """
    element = _require_object(element, f"actions[{index}]")

    fields: Dict[str, Any] = {}
    for key in SIMPLE_FIELDS:
        value = _get_string(element, key)
        if value is not None:
            fields[key] = value

    for chain in FALLBACK_CHAINS:
        fields.update(first_match(chain, element))

    return ParsedAction(original_index=index, **fields)


def decode_director_response(raw_text: Optional[str]) -> DecodeResult:
    """
    Decode a Director JSON response into ParsedAction records.

    Args:
        raw_text: The Director's raw response text

    Returns:
        DecodeResult. success is False when the envelope is unusable (blank,
        invalid JSON, no "actions" array) or when no element decoded.
    """
    if raw_text is None or not raw_text.strip():
        return DecodeResult(success=False, error_message="Empty Director response")

    try:
        document = json.loads(raw_text)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and over-long integer literals
        logger.warning(f"ActionParser: JSON parsing error - {e}")
        return DecodeResult(success=False, error_message=f"Invalid JSON: {e}")

    if not isinstance(document, dict) or "actions" not in document:
        logger.warning("ActionParser: No 'actions' property found in JSON")
        return DecodeResult(
            success=False, error_message="Missing 'actions' in Director response"
        )

    raw_actions = document["actions"]
    if not isinstance(raw_actions, list):
        logger.warning("ActionParser: 'actions' is not an array")
        return DecodeResult(success=False, error_message="'actions' must be an array")

    parsed: List[ParsedAction] = []
    dropped: List[int] = []

    for index, element in enumerate(raw_actions):
        try:
            parsed.append(parse_single_action(element, index))
        except Exception as e:
            logger.warning(f"ActionParser: Error parsing action at index {index} - {e}")
            dropped.append(index)

    if not parsed:
        return DecodeResult(
            success=False,
            error_message="No actions could be decoded",
            dropped_indices=dropped,
        )

    if dropped:
        logger.info(
            f"ActionParser: decoded {len(parsed)}/{len(raw_actions)} actions, dropped {dropped}"
        )

    return DecodeResult(success=True, actions=parsed, dropped_indices=dropped)


def parse_director_response(raw_text: Optional[str]) -> Optional[List[ParsedAction]]:
    """Convenience wrapper returning the decoded actions, or None on failure."""
    result = decode_director_response(raw_text)
    return result.actions if result.success else None
