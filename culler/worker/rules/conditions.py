"""Condition evaluation and the left-to-right AND/OR fold"""

import math
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence

from culler.api.schemas.media import MediaItem
from culler.api.schemas.rules import (
    Condition,
    ConditionField,
    ConditionOperator,
    FieldType,
    FIELD_TYPES,
    OPERATORS_BY_TYPE,
    Join,
)

logger = logging.getLogger(__name__)

# Absent "days since" values read as infinitely long ago
NEVER = math.inf

BYTES_PER_GB = 1024 ** 3


def _days_since(moment: Optional[datetime], now: datetime) -> float:
    if moment is None:
        return NEVER
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (now - moment).total_seconds() / 86400


def get_field_value(media: MediaItem, field: ConditionField, now: datetime) -> Any:
    """Resolve a condition field against a media snapshot"""
    if field == ConditionField.watched:
        return media.watched
    if field == ConditionField.monitored:
        return media.monitored
    if field == ConditionField.has_request:
        return media.has_active_request
    if field == ConditionField.on_watchlist:
        return media.on_watchlist
    if field == ConditionField.view_count:
        return media.view_count
    if field == ConditionField.days_since_watched:
        return _days_since(media.last_watched_at, now)
    if field == ConditionField.days_since_added:
        return _days_since(media.added_at, now)
    if field == ConditionField.days_since_release:
        return _days_since(media.released_at, now)
    if field == ConditionField.days_since_activity:
        return _days_since(media.last_activity_at or media.last_watched_at, now)
    if field == ConditionField.year:
        return media.year
    if field == ConditionField.rating:
        return media.rating
    if field == ConditionField.file_size_gb:
        return None if media.file_size_bytes is None else media.file_size_bytes / BYTES_PER_GB
    if field == ConditionField.title:
        return media.title
    if field == ConditionField.genre:
        return list(media.genres)
    if field == ConditionField.content_rating:
        return media.content_rating
    raise KeyError(field)


def _compare_numbers(actual: float, operator: ConditionOperator, expected: float) -> bool:
    if operator == ConditionOperator.equals:
        return actual == expected
    if operator == ConditionOperator.not_equals:
        return actual != expected
    if operator == ConditionOperator.greater_than:
        return actual > expected
    if operator == ConditionOperator.less_than:
        return actual < expected
    if operator == ConditionOperator.greater_than_or_equals:
        return actual >= expected
    if operator == ConditionOperator.less_than_or_equals:
        return actual <= expected
    return False


def _compare_text(actual: str, operator: ConditionOperator, expected: str) -> bool:
    actual = actual.lower()
    expected = expected.lower()
    if operator == ConditionOperator.equals:
        return actual == expected
    if operator == ConditionOperator.not_equals:
        return actual != expected
    if operator == ConditionOperator.contains:
        return expected in actual
    if operator == ConditionOperator.not_contains:
        return expected not in actual
    return False


def _compare_text_set(values: Iterable[str], operator: ConditionOperator, expected: str) -> bool:
    values = list(values)
    if operator == ConditionOperator.equals:
        return any(_compare_text(v, operator, expected) for v in values)
    if operator == ConditionOperator.contains:
        return any(_compare_text(v, operator, expected) for v in values)
    if operator == ConditionOperator.not_equals:
        return not any(_compare_text(v, ConditionOperator.equals, expected) for v in values)
    if operator == ConditionOperator.not_contains:
        return not any(_compare_text(v, ConditionOperator.contains, expected) for v in values)
    return False


class ConditionEvaluator:
    """Evaluates single conditions against media snapshots.

    Malformed conditions never raise: an unknown field, an operator the
    field's type does not allow or a value that cannot be coerced all
    evaluate to False.
    """

    def evaluate(self, condition: Condition, media: MediaItem, now: datetime) -> bool:
        try:
            field = ConditionField(condition.field)
            operator = ConditionOperator(condition.operator)
        except ValueError:
            logger.warning(f"Unknown field or operator in condition: {condition.field!r} {condition.operator!r}")
            return False

        field_type = FIELD_TYPES.get(field)
        if field_type is None or operator not in OPERATORS_BY_TYPE[field_type]:
            logger.warning(f"Operator {operator.value} not supported for field {field.value}")
            return False

        actual = get_field_value(media, field, now)

        try:
            if field_type == FieldType.boolean:
                if not isinstance(condition.value, bool):
                    return False
                return bool(actual) == condition.value

            if field_type == FieldType.number:
                if isinstance(condition.value, bool):
                    return False
                expected = float(condition.value)
                actual = 0.0 if actual is None else float(actual)
                return _compare_numbers(actual, operator, expected)

            if not isinstance(condition.value, str):
                return False
            if isinstance(actual, list):
                return _compare_text_set(actual, operator, condition.value)
            return _compare_text(actual or "", operator, condition.value)

        except (TypeError, ValueError) as e:
            logger.warning(f"Condition on {field.value} could not be evaluated: {e}")
            return False


_default_evaluator = ConditionEvaluator()


def evaluate_condition(condition: Condition, media: MediaItem, now: datetime) -> bool:
    return _default_evaluator.evaluate(condition, media, now)


def evaluate_expression(conditions: Sequence[Condition], media: MediaItem, now: datetime) -> bool:
    """Fold conditions left to right using each condition's join with the next.

    ``[A and, B or, C]`` is ``(A and B) or C``; there is no operator
    precedence. An empty list matches everything.
    """
    if not conditions:
        return True

    result = evaluate_condition(conditions[0], media, now)
    for previous, condition in zip(conditions, conditions[1:]):
        value = evaluate_condition(condition, media, now)
        if previous.join == Join.OR:
            result = result or value
        else:
            result = result and value
    return result


def describe_expression(conditions: List[Condition]) -> str:
    """Human readable form showing the fold order"""
    if not conditions:
        return "(everything)"
    text = f"{conditions[0].field.value} {conditions[0].operator.value} {conditions[0].value!r}"
    for previous, condition in zip(conditions, conditions[1:]):
        term = f"{condition.field.value} {condition.operator.value} {condition.value!r}"
        text = f"({text}) {previous.join.value} {term}"
    return text
