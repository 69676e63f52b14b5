"""
Non-conformity condition evaluation.

A condition is violated when evaluate_condition() returns True. Values are the
typed FieldValue produced by values.parse_field_value(); a missing or empty
answer only ever satisfies the `empty` condition.
"""

from typing import Any, Dict

from .schema import FieldCondition, TemplateField
from .values import (
    ChoiceValue,
    EmptyValue,
    FieldValue,
    MultiSelectValue,
    NumberValue,
    TextValue,
    YesNoValue,
)


def _number(condition_value: Dict[str, Any], key: str):
    raw = condition_value.get(key)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _evaluate_number(condition_type: str, number: float, cv: Dict[str, Any]) -> bool:
    low = _number(cv, "min")
    high = _number(cv, "max")
    if condition_type == "less_than":
        return low is not None and number < low
    if condition_type == "greater_than":
        return high is not None and number > high
    if condition_type == "between":
        if low is None or high is None:
            return False
        return number < low or number > high
    return False


def _evaluate_rating(condition_type: str, rating: float, cv: Dict[str, Any]) -> bool:
    threshold = _number(cv, "threshold")
    if condition_type == "less_than":
        return threshold is not None and rating < threshold
    return False


def _evaluate_multi_select(selected: tuple, cv: Dict[str, Any]) -> bool:
    required = cv.get("required") or []
    forbidden = cv.get("forbidden") or []
    if any(item not in selected for item in required):
        return True
    if any(item in selected for item in forbidden):
        return True
    return False


def evaluate_condition(field: TemplateField, value: FieldValue, condition: FieldCondition) -> bool:
    """Return True when `value` is a non-conformity under `condition`."""
    condition_type = condition.condition_type
    cv = condition.condition_value or {}

    if isinstance(value, EmptyValue):
        return condition_type == "empty"
    if condition_type == "empty":
        return False

    field_type = field.field_type

    if field_type == "yes_no" and isinstance(value, YesNoValue):
        if condition_type == "equals":
            return value.answer == cv.get("value")
        if condition_type == "not_equals":
            return value.answer != cv.get("value")
        return False

    if field_type == "number" and isinstance(value, NumberValue):
        return _evaluate_number(condition_type, value.number, cv)

    if field_type == "rating" and isinstance(value, NumberValue):
        return _evaluate_rating(condition_type, value.number, cv)

    if field_type == "dropdown" and isinstance(value, ChoiceValue):
        targets = cv.get("values") or []
        if condition_type == "in_list":
            return value.selected in targets
        if condition_type == "not_in_list":
            return value.selected not in targets
        return False

    if field_type == "checkbox_multiple" and isinstance(value, MultiSelectValue):
        return _evaluate_multi_select(value.selected, cv)

    if field_type == "text" and isinstance(value, TextValue):
        if condition_type == "equals":
            return value.text == cv.get("value")
        if condition_type == "not_equals":
            return value.text != cv.get("value")
        return False

    return False
