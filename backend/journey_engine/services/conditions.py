import logging
from typing import Any, Iterable, Mapping

from journey_engine.models.journey_step import ConditionPredicate

logger = logging.getLogger(__name__)


def _is_unset(value: Any) -> bool:
    return value is None or value == ""


def _as_number(value: Any):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_predicate(predicate: ConditionPredicate, record: Mapping[str, Any]) -> bool:
    actual = record.get(predicate.field)
    expected = predicate.value
    operator = predicate.operator

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return str(expected if expected is not None else "") in str(actual if actual is not None else "")
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_set":
        return not _is_unset(actual)
    if operator == "is_not_set":
        return _is_unset(actual)

    logger.warning(f"[CONDITION] Unknown operator '{operator}', treating as failed")
    return False


def evaluate_conditions(predicates: Iterable[ConditionPredicate], record: Mapping[str, Any]) -> bool:
    """Logical AND of all predicates; an empty list passes."""
    return all(evaluate_predicate(predicate, record) for predicate in predicates)


def trigger_matches(trigger_type: str, conditions: Mapping[str, Any], trigger_data: Mapping[str, Any]) -> bool:
    """Check a journey's trigger_conditions against an incoming trigger payload."""
    conditions = conditions or {}

    if trigger_type == "lifecycle_change":
        if conditions.get("from_stage") and trigger_data.get("from_stage") != conditions["from_stage"]:
            return False
        if conditions.get("to_stage") and trigger_data.get("to_stage") != conditions["to_stage"]:
            return False
        return True

    if trigger_type == "tag_added":
        if conditions.get("tag"):
            return conditions["tag"] in (trigger_data.get("tags") or [])
        return True

    if trigger_type == "deal_created":
        if conditions.get("pipeline_id") and trigger_data.get("pipeline_id") != conditions["pipeline_id"]:
            return False
        return True

    if trigger_type == "deal_stage_changed":
        if conditions.get("pipeline_id") and trigger_data.get("pipeline_id") != conditions["pipeline_id"]:
            return False
        if conditions.get("to_stage") and trigger_data.get("to_stage") != conditions["to_stage"]:
            return False
        return True

    return True
